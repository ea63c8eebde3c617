import pytest

from analysis_worker.adapters.memory_adapter import InMemoryRecordStore
from analysis_worker.adapters.sqs_adapter import QueuedNotification
from analysis_worker.config import AnalysisConfig
from analysis_worker.models import Notification, STATUS_COMPLETED, TICKET_FAILED
from analysis_worker.service import WorkerService

from factories import FakeProvider, face_detection, label_detection, soccer_video

VIDEO_ID = "uploads-match-1-mp4"


class FakeNotificationSource:
    def __init__(self, batches):
        self.batches = list(batches)
        self.acknowledged = []
        self.closed = False

    def connect(self):
        pass

    def receive(self):
        return self.batches.pop(0) if self.batches else []

    def acknowledge(self, receipt_handle):
        self.acknowledged.append(receipt_handle)

    def close(self):
        self.closed = True


@pytest.fixture
def config(tmp_path):
    config = AnalysisConfig()
    config.STORE_TYPE = "memory"
    config.STORE_CONFIG = {}
    config.NOTIFICATION_CONFIG = {}
    config.DATA_DIR = str(tmp_path)
    return config


def _failed(kind):
    return Notification(job_id=f"{VIDEO_ID}-{kind}", video_id=VIDEO_ID, kind=kind, status=TICKET_FAILED,
                        message="Unsupported codec")


def test_initialize_builds_memory_store(config):
    service = WorkerService(config, provider=FakeProvider())
    service.initialize()

    assert isinstance(service.store, InMemoryRecordStore)
    assert service.orchestrator.job_kinds == ("label", "face", "moderation")
    assert service.health_server is None


def test_sweep_finalizes_analyzing_records(config):
    provider = FakeProvider()
    service = WorkerService(config, provider=provider)
    service.initialize()
    service.orchestrator.submit_jobs(soccer_video())

    assert service.run_once() is False

    provider.succeed(VIDEO_ID, "label", [label_detection(1000, "Ball", 90.0)])
    provider.succeed(VIDEO_ID, "face", [face_detection(1000)])
    provider.succeed(VIDEO_ID, "moderation", [])

    assert service.run_once() is True
    assert service.orchestrator.get(VIDEO_ID).status == STATUS_COMPLETED
    assert service.orchestrator.pending_video_ids() == []


def test_notifications_are_applied_then_acknowledged(config):
    source = FakeNotificationSource([[
        QueuedNotification(_failed("label"), "rh-1"),
        QueuedNotification(_failed("face"), "rh-2"),
        QueuedNotification(_failed("moderation"), "rh-3"),
    ]])
    service = WorkerService(config, provider=FakeProvider(), notification_source=source)
    service.initialize()
    service.orchestrator.submit_jobs(soccer_video())

    assert service.run_once() is True

    assert source.acknowledged == ["rh-1", "rh-2", "rh-3"]
    record = service.orchestrator.get(VIDEO_ID)
    assert record.status == "failed"
    assert record.error.startswith("All analysis jobs failed")


def test_failed_notification_is_not_acknowledged(config):
    class ExplodingStore(InMemoryRecordStore):
        def get(self, video_id):
            raise ConnectionError("store down")

    source = FakeNotificationSource([[QueuedNotification(_failed("label"), "rh-1")]])
    service = WorkerService(config, provider=FakeProvider(), store=ExplodingStore(), notification_source=source)
    service.initialize()

    assert service._handle_notification(source.receive()[0]) is False
    assert source.acknowledged == []


def test_stop_closes_adapters_and_reports_stats(config):
    source = FakeNotificationSource([])
    service = WorkerService(config, provider=FakeProvider(), notification_source=source)
    service.initialize()

    stats = service.get_stats()
    assert stats["config"]["store_type"] == "memory"
    assert stats["orchestrator"]["records_submitted"] == 0

    service.reset_stats()
    service.stop()

    assert source.closed is True
    assert service.running is False


def test_initialize_fails_on_invalid_config(config):
    config.STORE_TYPE = "dynamodb"
    config.STORE_CONFIG = {}
    service = WorkerService(config, provider=FakeProvider())

    with pytest.raises(ValueError, match="ANALYSIS_TABLE_NAME"):
        service.initialize()
