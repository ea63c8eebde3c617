"""
Domain models for the analysis worker.

Defines the analysis record, its job tickets and the small value types
passed between the orchestrator, the aggregator and the adapters.
"""

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List


# Record lifecycle
STATUS_PROCESSING = "processing"
STATUS_ANALYZING = "analyzing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

# Ticket lifecycle
TICKET_PENDING = "pending"
TICKET_SUCCEEDED = "succeeded"
TICKET_FAILED = "failed"
TERMINAL_TICKET_STATUSES = frozenset({TICKET_SUCCEEDED, TICKET_FAILED})

# Job kinds
KIND_LABEL = "label"
KIND_FACE = "face"
KIND_MODERATION = "moderation"
KIND_PERSON = "person"
DEFAULT_JOB_KINDS = (KIND_LABEL, KIND_FACE, KIND_MODERATION)
ALL_JOB_KINDS = DEFAULT_JOB_KINDS + (KIND_PERSON,)


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string"""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class VideoRef:
    """Storage object reference carried by an upload event"""
    bucket: str
    key: str
    size_bytes: Optional[int] = None
    name: Optional[str] = None


@dataclass
class JobTicket:
    """Tracks one external analysis job and its last known status"""
    kind: str
    job_id: Optional[str]
    status: str = TICKET_PENDING
    payload: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TICKET_STATUSES

    @property
    def awaiting_payload(self) -> bool:
        """Succeeded according to a notification, but results not fetched yet"""
        return self.status == TICKET_SUCCEEDED and self.payload is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'job_id': self.job_id,
            'status': self.status,
            'payload': self.payload,
            'message': self.message,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobTicket':
        return cls(
            kind=data['kind'],
            job_id=data.get('job_id'),
            status=data.get('status', TICKET_PENDING),
            payload=data.get('payload'),
            message=data.get('message'),
            updated_at=data.get('updated_at'),
        )


def can_overwrite_ticket(current: Optional[JobTicket], incoming: JobTicket) -> bool:
    """
    Ticket write guard shared by every store.

    A write is allowed while the stored ticket is pending, or to attach a
    payload to a ticket already terminal with the same status. Terminal
    statuses never regress.
    """
    if current is None or current.status == TICKET_PENDING:
        return True
    return current.status == incoming.status and current.payload is None


@dataclass
class AnalysisRecord:
    """Lifecycle state of one uploaded video"""
    video_id: str
    status: str
    created_at: str
    video_key: Optional[str] = None
    bucket: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    report: Optional[str] = None
    expected_kinds: List[str] = field(default_factory=list)
    tickets: Dict[str, JobTicket] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def copy(self) -> 'AnalysisRecord':
        return copy.deepcopy(self)

    def with_changes(self, changes: Dict[str, Any]) -> 'AnalysisRecord':
        return replace(self.copy(), **changes)

    def summary(self) -> 'RecordSummary':
        return RecordSummary(
            video_id=self.video_id,
            status=self.status,
            created_at=self.created_at,
            completed_at=self.completed_at,
            video_key=self.video_key,
        )


# Fields a conditional update may set on a record
MUTABLE_RECORD_FIELDS = frozenset({'status', 'completed_at', 'error', 'report'})


@dataclass
class RecordSummary:
    """Listing view of a record"""
    video_id: str
    status: str
    created_at: str
    completed_at: Optional[str] = None
    video_key: Optional[str] = None


@dataclass
class ProviderStatus:
    """Job status as reported by the capability provider"""
    status: str
    payload: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


@dataclass
class Notification:
    """Out-of-band job status event"""
    job_id: str
    video_id: str
    kind: str
    status: str
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


@dataclass
class RefreshOutcome:
    """Result of one refresh pass over a record"""
    outcome: str
    record: AnalysisRecord
    written: bool = False


# Refresh outcomes
OUTCOME_STILL_PENDING = "still_pending"
OUTCOME_READY = "ready_to_finalize"
OUTCOME_ALL_FAILED = "all_failed"
OUTCOME_TERMINAL = "terminal"
