"""
Error taxonomy for the analysis worker.

Adapters translate client library errors (botocore, psycopg, pydantic)
into these types at their boundary so the orchestrator only ever reasons
about domain failures.
"""

from typing import Iterable, Optional


class AnalysisError(Exception):
    """Base class for all analysis worker errors"""


class SubmissionError(AnalysisError):
    """The capability provider rejected a job at submit time"""

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.kind = kind


class TransientPollError(AnalysisError):
    """A status check failed in a way that may succeed on the next attempt"""

    def __init__(self, message: str, kind: Optional[str] = None, job_id: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.job_id = job_id


class JobFailure(AnalysisError):
    """A single job reached a terminal failure"""

    def __init__(self, kind: str, message: Optional[str] = None):
        super().__init__(f"{kind} job failed: {message or 'Unknown error'}")
        self.kind = kind
        self.reason = message


class AllJobsFailed(AnalysisError):
    """Every job of a record ended in failure"""

    def __init__(self, failures: Iterable[JobFailure]):
        self.failures = list(failures)
        details = "; ".join(str(failure) for failure in self.failures) or "no jobs were created"
        super().__init__(f"All analysis jobs failed: {details}")


class StoreConflict(AnalysisError):
    """A conditional write lost against a concurrent writer"""

    def __init__(self, video_id: str, expected_status: Optional[str] = None):
        if expected_status:
            message = f"Record {video_id} is no longer in status '{expected_status}'"
        else:
            message = f"Record {video_id} already exists"
        super().__init__(message)
        self.video_id = video_id
        self.expected_status = expected_status


class NotFound(AnalysisError):
    """No record exists for the requested video id"""

    def __init__(self, video_id: str):
        super().__init__(f"Video analysis not found: {video_id}")
        self.video_id = video_id


class PayloadTooLarge(AnalysisError):
    """A ticket payload or report exceeds what the record store can hold"""

    def __init__(self, video_id: str, size_bytes: Optional[int] = None, limit_bytes: Optional[int] = None):
        if size_bytes is not None and limit_bytes is not None:
            message = f"Item for {video_id} would be {size_bytes} bytes, store limit is {limit_bytes}"
        else:
            message = f"Item for {video_id} exceeds the store size limit"
        super().__init__(message)
        self.video_id = video_id
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
