"""
Adapter pattern implementations for record stores, capability providers
and notification sources.

This module provides the abstract base classes and the in-memory store;
the AWS and Postgres adapters are imported from their own modules so
their client libraries load only when used.
"""

from .base import CapabilityProvider, RecordStore
from .memory_adapter import InMemoryRecordStore

__all__ = [
    'CapabilityProvider',
    'RecordStore',
    'InMemoryRecordStore'
]
