import pytest

from analysis_worker.errors import NotFound, StoreConflict
from analysis_worker.models import AnalysisRecord, JobTicket, TICKET_PENDING, TICKET_SUCCEEDED, TICKET_FAILED

PAYLOAD = {"kind": "face", "detections": []}


def _record(video_id="v1", status="analyzing"):
    return AnalysisRecord(video_id=video_id, status=status, created_at="2024-05-01T00:00:01+00:00")


def test_create_rejects_duplicates(store):
    store.create(_record())

    with pytest.raises(StoreConflict):
        store.create(_record())


def test_records_are_copied_in_and_out(store):
    record = _record()
    store.create(record)
    record.status = "failed"

    fetched = store.get("v1")
    fetched.tickets["face"] = JobTicket(kind="face", job_id="j")

    assert store.get("v1").status == "analyzing"
    assert store.get("v1").tickets == {}


def test_conditional_update(store):
    store.create(_record())

    updated = store.conditional_update("v1", "analyzing", {"status": "failed", "error": "boom"})

    assert updated.status == "failed"
    with pytest.raises(StoreConflict):
        store.conditional_update("v1", "analyzing", {"status": "completed"})
    with pytest.raises(NotFound):
        store.conditional_update("missing", "analyzing", {"status": "completed"})


def test_ticket_guard_never_regresses_terminal_status(store):
    store.create(_record())

    assert store.save_ticket("v1", JobTicket(kind="face", job_id="j", status=TICKET_PENDING)) is True
    assert store.save_ticket("v1", JobTicket(kind="face", job_id="j", status=TICKET_SUCCEEDED)) is True
    # Same status may attach the payload once
    assert store.save_ticket("v1", JobTicket(kind="face", job_id="j", status=TICKET_SUCCEEDED, payload=PAYLOAD)) is True
    assert store.save_ticket("v1", JobTicket(kind="face", job_id="j", status=TICKET_FAILED)) is False
    assert store.save_ticket("v1", JobTicket(kind="face", job_id="j", status=TICKET_PENDING)) is False
    assert store.save_ticket("v1", JobTicket(kind="face", job_id="j", status=TICKET_SUCCEEDED, payload={})) is False

    assert store.get("v1").tickets["face"].payload == PAYLOAD


def test_save_ticket_for_missing_record(store):
    assert store.save_ticket("missing", JobTicket(kind="face", job_id="j")) is False


def test_list_records_filters_by_status(store):
    store.create(_record("v1", "analyzing"))
    store.create(_record("v2", "completed"))

    assert [record.video_id for record in store.list_records("analyzing")] == ["v1"]
    assert sorted(record.video_id for record in store.list_records()) == ["v1", "v2"]
