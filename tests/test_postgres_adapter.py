from unittest.mock import MagicMock

import pytest

from analysis_worker.adapters.postgres_adapter import PostgresRecordStore
from analysis_worker.errors import NotFound, StoreConflict
from analysis_worker.models import AnalysisRecord, JobTicket


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def store(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    pool = MagicMock()
    pool.connection.return_value.__enter__.return_value = conn

    store = PostgresRecordStore("postgresql://worker@localhost/analysis")
    store.pool = pool
    return store


def test_create_conflict(store, cursor):
    cursor.rowcount = 0

    with pytest.raises(StoreConflict):
        store.create(AnalysisRecord(video_id="v1", status="processing", created_at="2024-05-01T00:00:01+00:00"))


def test_conditional_update_guards_on_status(store, cursor):
    cursor.fetchone.return_value = None

    with pytest.raises(ValueError):
        store.conditional_update("v1", "analyzing", {"bucket": "other"})

    cursor.fetchone.side_effect = [None, (1,)]
    with pytest.raises(StoreConflict):
        store.conditional_update("v1", "analyzing", {"status": "completed"})

    cursor.fetchone.side_effect = [None, None]
    with pytest.raises(NotFound):
        store.conditional_update("v1", "analyzing", {"status": "completed"})

    sql, params = cursor.execute.call_args_list[-2].args
    assert "WHERE video_id = %s AND status = %s" in sql
    assert params == ("completed", "v1", "analyzing")


def test_save_ticket_reports_guard_result(store, cursor):
    cursor.rowcount = 1
    assert store.save_ticket("v1", JobTicket(kind="label", job_id="job-1")) is True

    cursor.rowcount = 0
    assert store.save_ticket("v1", JobTicket(kind="label", job_id="job-1", status="failed")) is False
