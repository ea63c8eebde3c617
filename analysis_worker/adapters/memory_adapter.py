"""
In-process record store.

Used for local development and tests. Records are copied on the way in
and out so callers never share mutable state with the store, and a single
lock makes every conditional write atomic.
"""

import copy
import logging
import threading
from typing import Optional, Dict, Any, List

from .base import RecordStore
from ..errors import NotFound, StoreConflict
from ..models import AnalysisRecord, JobTicket, MUTABLE_RECORD_FIELDS, can_overwrite_ticket

logger = logging.getLogger("analysis_worker")


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed implementation of the record store"""

    def __init__(self):
        self._records: Dict[str, AnalysisRecord] = {}
        self._lock = threading.Lock()
        self.write_count = 0

    def create(self, record: AnalysisRecord) -> None:
        with self._lock:
            if record.video_id in self._records:
                raise StoreConflict(record.video_id)
            self._records[record.video_id] = record.copy()
            self.write_count += 1

    def get(self, video_id: str) -> Optional[AnalysisRecord]:
        with self._lock:
            record = self._records.get(video_id)
            return record.copy() if record else None

    def conditional_update(self, video_id: str, expected_status: str, changes: Dict[str, Any]) -> AnalysisRecord:
        unknown = set(changes) - MUTABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        with self._lock:
            record = self._records.get(video_id)
            if record is None:
                raise NotFound(video_id)
            if record.status != expected_status:
                raise StoreConflict(video_id, expected_status)

            updated = record.with_changes(changes)
            self._records[video_id] = updated
            self.write_count += 1
            return updated.copy()

    def save_ticket(self, video_id: str, ticket: JobTicket) -> bool:
        with self._lock:
            record = self._records.get(video_id)
            if record is None:
                logger.warning(f"Cannot save {ticket.kind} ticket, record {video_id} does not exist")
                return False
            if not can_overwrite_ticket(record.tickets.get(ticket.kind), ticket):
                return False

            record.tickets[ticket.kind] = copy.deepcopy(ticket)
            self.write_count += 1
            return True

    def list_records(self, status: Optional[str] = None) -> List[AnalysisRecord]:
        with self._lock:
            return [
                record.copy()
                for record in self._records.values()
                if status is None or record.status == status
            ]
