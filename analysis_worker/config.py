"""
Configuration management for the analysis worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
from typing import Dict, Any, Tuple
from dataclasses import dataclass

from .models import DEFAULT_JOB_KINDS, KIND_PERSON


@dataclass
class AnalysisConfig:
    """Configuration for the analysis worker"""

    # Record store settings
    STORE_TYPE: str = "dynamodb"  # dynamodb, postgres, memory
    STORE_CONFIG: Dict[str, Any] = None

    # Rekognition settings
    AWS_REGION: str = "us-east-1"
    SNS_TOPIC_ARN: str = None
    REKOGNITION_ROLE_ARN: str = None
    MIN_CONFIDENCE: float = 50.0
    ENABLE_PERSON_TRACKING: bool = False

    # Notification settings
    NOTIFICATION_SOURCE_TYPE: str = "none"  # sqs, http, none
    NOTIFICATION_CONFIG: Dict[str, Any] = None
    # Shared secret required on HTTP pushes, passed as ?token= on the SNS subscription URL
    NOTIFICATION_TOKEN: str = None

    # Sweep settings
    POLL_INTERVAL_MS: int = 5000
    BACKOFF_MULTIPLIER: float = 1.5
    MAX_BACKOFF_MS: int = 60000

    # Client-side report polling
    REPORT_POLL_INTERVAL_SEC: float = 5.0
    REPORT_MAX_WAIT_SEC: float = 300.0

    # Logging
    LOG_LEVEL: str = "INFO"

    # HTTP server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000

    # Data directory
    DATA_DIR: str = "/app/data"

    @classmethod
    def from_env(cls) -> 'AnalysisConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Record store configuration
        config.STORE_TYPE = os.getenv("STORE_TYPE", "dynamodb")
        config.STORE_CONFIG = cls._parse_store_config()

        # Rekognition configuration
        config.AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
        config.SNS_TOPIC_ARN = os.getenv("SNS_TOPIC_ARN")
        config.REKOGNITION_ROLE_ARN = os.getenv("REKOGNITION_ROLE_ARN")
        config.MIN_CONFIDENCE = float(os.getenv("REKOGNITION_MIN_CONFIDENCE", "50"))
        config.ENABLE_PERSON_TRACKING = os.getenv("ENABLE_PERSON_TRACKING", "false").lower() == "true"

        # Notification configuration
        config.NOTIFICATION_SOURCE_TYPE = os.getenv("NOTIFICATION_SOURCE_TYPE", "none")
        config.NOTIFICATION_CONFIG = cls._parse_notification_config()
        config.NOTIFICATION_TOKEN = os.getenv("NOTIFICATION_TOKEN") or None

        # Sweep settings
        config.POLL_INTERVAL_MS = int(os.getenv("WORKER_POLL_MS", "5000"))
        config.BACKOFF_MULTIPLIER = float(os.getenv("WORKER_BACKOFF_MULTIPLIER", "1.5"))
        config.MAX_BACKOFF_MS = int(os.getenv("WORKER_MAX_BACKOFF_MS", "60000"))

        config.REPORT_POLL_INTERVAL_SEC = float(os.getenv("REPORT_POLL_INTERVAL_SEC", "5"))
        config.REPORT_MAX_WAIT_SEC = float(os.getenv("REPORT_MAX_WAIT_SEC", "300"))

        # Logging
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # HTTP server
        config.ENABLE_HTTP_SERVER = os.getenv("WORKER_DEV_HTTP", "false").lower() == "true"
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))

        # Data directory
        config.DATA_DIR = os.getenv("DATA_DIR", "/app/data")

        return config

    @classmethod
    def _parse_store_config(cls) -> Dict[str, Any]:
        """Parse record store specific configuration"""
        store_type = os.getenv("STORE_TYPE", "dynamodb")

        if store_type == "dynamodb":
            return {
                "table_name": os.getenv("ANALYSIS_TABLE_NAME"),
                "status_index": os.getenv("ANALYSIS_STATUS_INDEX", "StatusIndex"),
                "region": os.getenv("AWS_REGION", "us-east-1")
            }
        elif store_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        else:
            return {}

    @classmethod
    def _parse_notification_config(cls) -> Dict[str, Any]:
        """Parse notification source specific configuration"""
        source_type = os.getenv("NOTIFICATION_SOURCE_TYPE", "none")

        if source_type == "sqs":
            return {
                "queue_url": os.getenv("NOTIFICATION_QUEUE_URL"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "max_messages": int(os.getenv("SQS_MAX_MESSAGES", "10")),
                "wait_time_seconds": int(os.getenv("SQS_WAIT_TIME", "20"))
            }
        else:
            return {}

    def validate(self) -> None:
        """Validate configuration and raise errors for missing or invalid values"""
        if self.STORE_TYPE not in ("dynamodb", "postgres", "memory"):
            raise ValueError(f"Unsupported STORE_TYPE: {self.STORE_TYPE}")
        if self.NOTIFICATION_SOURCE_TYPE not in ("sqs", "http", "none"):
            raise ValueError(f"Unsupported NOTIFICATION_SOURCE_TYPE: {self.NOTIFICATION_SOURCE_TYPE}")

        required_vars = []

        if self.STORE_TYPE == "dynamodb" and not self.STORE_CONFIG.get("table_name"):
            required_vars.append("ANALYSIS_TABLE_NAME")

        if self.STORE_TYPE == "postgres" and not self.STORE_CONFIG.get("database_url"):
            required_vars.append("DATABASE_URL")

        if self.NOTIFICATION_SOURCE_TYPE == "sqs" and not self.NOTIFICATION_CONFIG.get("queue_url"):
            required_vars.append("NOTIFICATION_QUEUE_URL")

        # Rekognition needs both to publish completion messages
        if self.NOTIFICATION_SOURCE_TYPE != "none":
            if not self.SNS_TOPIC_ARN:
                required_vars.append("SNS_TOPIC_ARN")
            if not self.REKOGNITION_ROLE_ARN:
                required_vars.append("REKOGNITION_ROLE_ARN")

        if required_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(required_vars)}")

    def job_kinds(self) -> Tuple[str, ...]:
        """Job kinds submitted for every video"""
        if self.ENABLE_PERSON_TRACKING:
            return DEFAULT_JOB_KINDS + (KIND_PERSON,)
        return DEFAULT_JOB_KINDS
