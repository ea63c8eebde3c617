import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# botocore clients used with Stubber still sign requests
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

from analysis_worker.adapters.memory_adapter import InMemoryRecordStore  # noqa: E402
from analysis_worker.orchestrator import AnalysisOrchestrator  # noqa: E402

from factories import FakeProvider, TickingClock  # noqa: E402


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(provider, store):
    return AnalysisOrchestrator(provider, store, clock=TickingClock())
