"""
Main worker service.

Wires the record store, the Rekognition provider and the notification
source from configuration, then runs the loop that applies job completion
notifications and sweeps records still waiting on their analysis jobs.
"""

import os
import time
import signal
import sys
import logging
from typing import Optional, Dict, Any

from .config import AnalysisConfig
from .adapters.base import CapabilityProvider, RecordStore
from .adapters.dynamodb_adapter import DynamoDBRecordStore
from .adapters.memory_adapter import InMemoryRecordStore
from .adapters.postgres_adapter import PostgresRecordStore
from .adapters.rekognition_adapter import RekognitionCapabilityProvider
from .adapters.sqs_adapter import QueuedNotification, SQSNotificationSource
from .orchestrator import AnalysisOrchestrator
from .polling import PollPolicy
from .logging_setup import setup_logging, log_exception
from .http_server import HealthServer, create_app

logger = logging.getLogger("analysis_worker")


class WorkerService:
    """Main worker service with adapter-based architecture"""

    def __init__(self, config: Optional[AnalysisConfig] = None,
                 provider: Optional[CapabilityProvider] = None,
                 store: Optional[RecordStore] = None,
                 notification_source: Optional[SQSNotificationSource] = None):
        self.config = config or AnalysisConfig.from_env()
        self.provider = provider
        self.store = store
        self.notification_source = notification_source
        self.orchestrator: Optional[AnalysisOrchestrator] = None
        self.health_server = None
        self.running = False
        self.backoff_interval = self.config.POLL_INTERVAL_MS
        self.max_backoff = self.config.MAX_BACKOFF_MS

    def initialize(self):
        """Initialize worker with adapters based on configuration"""
        try:
            # Setup logging
            setup_logging(self.config.LOG_LEVEL, os.path.join(self.config.DATA_DIR, "worker"))

            # Validate configuration
            self.config.validate()

            # Initialize adapters
            self._initialize_adapters()

            # Initialize orchestrator
            self.orchestrator = AnalysisOrchestrator(self.provider, self.store, job_kinds=self.config.job_kinds())

            # HTTP push notifications arrive through the HTTP server
            if self.config.ENABLE_HTTP_SERVER or self.config.NOTIFICATION_SOURCE_TYPE == "http":
                if self.config.NOTIFICATION_SOURCE_TYPE == "http" and not self.config.NOTIFICATION_TOKEN:
                    logger.warning("NOTIFICATION_TOKEN is not set, /notifications accepts unauthenticated pushes")
                app = create_app(self.orchestrator, poll_policy=self.poll_policy(), stats_provider=self.get_stats,
                                 notification_token=self.config.NOTIFICATION_TOKEN)
                self.health_server = HealthServer(app, self.config.HTTP_PORT)
                self.health_server.start()

            logger.info("Worker service initialized successfully")

        except Exception as e:
            log_exception(logger, f"Failed to initialize worker service: {e}")
            raise

    def _initialize_adapters(self):
        """Initialize store, provider and notification adapters based on configuration"""
        if self.store is None:
            self.store = self._create_record_store()
        self.store.connect()

        if self.provider is None:
            self.provider = self._create_provider()
        self.provider.connect()

        if self.notification_source is None and self.config.NOTIFICATION_SOURCE_TYPE == "sqs":
            self.notification_source = self._create_notification_source()
        if self.notification_source is not None:
            self.notification_source.connect()

        logger.info(
            f"Initialized adapters: {self.config.STORE_TYPE} record store, "
            f"{self.config.NOTIFICATION_SOURCE_TYPE} notifications"
        )

    def _create_record_store(self) -> RecordStore:
        """Create record store adapter based on configuration"""

        if self.config.STORE_TYPE == "dynamodb":
            config = self.config.STORE_CONFIG
            return DynamoDBRecordStore(
                table_name=config["table_name"],
                region=config.get("region", "us-east-1"),
                status_index=config.get("status_index", "StatusIndex")
            )

        elif self.config.STORE_TYPE == "postgres":
            config = self.config.STORE_CONFIG
            return PostgresRecordStore(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10)
            )

        elif self.config.STORE_TYPE == "memory":
            logger.warning("Using in-memory record store; records are lost on restart")
            return InMemoryRecordStore()

        else:
            raise ValueError(f"Unsupported store type: {self.config.STORE_TYPE}")

    def _create_provider(self) -> CapabilityProvider:
        """Create the Rekognition provider"""
        return RekognitionCapabilityProvider(
            region=self.config.AWS_REGION,
            sns_topic_arn=self.config.SNS_TOPIC_ARN,
            role_arn=self.config.REKOGNITION_ROLE_ARN,
            min_confidence=self.config.MIN_CONFIDENCE
        )

    def _create_notification_source(self) -> SQSNotificationSource:
        """Create the SQS notification source"""
        config = self.config.NOTIFICATION_CONFIG
        return SQSNotificationSource(
            queue_url=config["queue_url"],
            region=config.get("region", "us-east-1"),
            max_messages=config.get("max_messages", 10),
            wait_time=config.get("wait_time_seconds", 20)
        )

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(
            interval_sec=self.config.REPORT_POLL_INTERVAL_SEC,
            max_wait_sec=self.config.REPORT_MAX_WAIT_SEC
        )

    def start(self):
        """Start the worker service"""
        if self.running:
            logger.warning("Worker service is already running")
            return

        self.running = True
        logger.info("Worker service started")
        self._start_polling_loop()

    def _start_polling_loop(self):
        """Run the notification and sweep loop until stopped"""
        logger.info("Worker started, waiting for analysis jobs...")

        while self.running:
            try:
                progressed = self.run_once()

                if not progressed:
                    # Nothing moved, use exponential backoff
                    time.sleep(self.backoff_interval / 1000.0)
                    # Increase backoff interval (exponential backoff)
                    self.backoff_interval = min(
                        self.backoff_interval * self.config.BACKOFF_MULTIPLIER,
                        self.max_backoff
                    )
                else:
                    # Reset backoff on progress
                    self.backoff_interval = self.config.POLL_INTERVAL_MS

            except KeyboardInterrupt:
                logger.info("Received interrupt signal, shutting down...")
                break
            except Exception as e:
                log_exception(logger, f"Unexpected error in worker loop: {str(e)}")
                # Use backoff for errors too
                time.sleep(self.backoff_interval / 1000.0)
                self.backoff_interval = min(
                    self.backoff_interval * self.config.BACKOFF_MULTIPLIER,
                    self.max_backoff
                )

        logger.info("Worker polling loop stopped")

    def run_once(self) -> bool:
        """
        Run one iteration of the worker loop.

        Applies every queued notification, then refreshes each record still
        analyzing.

        Returns:
            True if a notification was handled or a record reached a terminal state
        """
        progressed = False

        if self.notification_source is not None:
            for queued in self.notification_source.receive():
                if self._handle_notification(queued):
                    progressed = True

        for video_id in self.orchestrator.pending_video_ids():
            try:
                outcome = self.orchestrator.refresh(video_id)
            except Exception as e:
                log_exception(logger, f"Error refreshing video {video_id}: {str(e)}")
                continue
            if outcome.written:
                progressed = True

        return progressed

    def _handle_notification(self, queued: QueuedNotification) -> bool:
        """Apply a queued notification; the message is deleted only once applied"""
        notification = queued.notification
        try:
            applied = self.orchestrator.apply_notification(notification)
            if applied:
                self.orchestrator.refresh(notification.video_id)
        except Exception as e:
            log_exception(logger, f"Error applying notification for {notification.kind} job {notification.job_id}: {e}")
            return False

        self.notification_source.acknowledge(queued.receipt_handle)
        return True

    def stop(self):
        """Stop the worker service"""
        self.running = False

        # Stop health server
        if self.health_server:
            self.health_server.stop()

        # Close adapters
        if self.notification_source:
            self.notification_source.close()
        if self.provider:
            self.provider.close()
        if self.store:
            self.store.close()

        logger.info("Worker service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        stats = {
            'running': self.running,
            'config': {
                'store_type': self.config.STORE_TYPE,
                'notification_source_type': self.config.NOTIFICATION_SOURCE_TYPE,
                'job_kinds': list(self.config.job_kinds()),
                'poll_interval_ms': self.config.POLL_INTERVAL_MS
            }
        }

        if self.orchestrator:
            stats['orchestrator'] = self.orchestrator.get_stats()

        return stats

    def reset_stats(self):
        """Reset worker statistics"""
        if self.orchestrator:
            self.orchestrator.reset_stats()
        logger.info("Worker statistics reset")


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def main():
    """Main entry point"""
    # Setup signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    worker = WorkerService()

    try:
        worker.initialize()
        worker.start()
    except Exception as e:
        log_exception(logger, f"Worker failed to start: {str(e)}")
        sys.exit(1)
    finally:
        worker.stop()


if __name__ == "__main__":
    main()
