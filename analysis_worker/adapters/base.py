"""
Abstract base classes for capability providers and record stores.

Defines the interface that all adapters must implement, enabling
easy swapping between stores (DynamoDB, Postgres, in-memory) and
detection backends.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List

from ..models import AnalysisRecord, JobTicket, ProviderStatus, VideoRef


class CapabilityProvider(ABC):
    """Abstract base class for asynchronous detection providers"""

    @abstractmethod
    def submit_job(self, kind: str, video: VideoRef, tag: str) -> str:
        """
        Start an asynchronous detection job.

        Args:
            kind: Job kind (label, face, moderation, person)
            video: Storage reference of the video to analyze
            tag: Correlation tag echoed back in notifications (the video id)

        Returns:
            External job id

        Raises:
            SubmissionError: If the provider rejected the job
        """
        pass

    @abstractmethod
    def poll_job(self, kind: str, job_id: str) -> ProviderStatus:
        """
        Get the current status of a job, with its validated payload once succeeded.

        Args:
            kind: Job kind the job was submitted as
            job_id: External job id

        Returns:
            ProviderStatus with pending, succeeded or failed status

        Raises:
            TransientPollError: If the status could not be determined this time
        """
        pass

    def connect(self) -> None:
        """Create clients; no-op for providers that need none"""

    def close(self) -> None:
        """Release clients; no-op for providers that need none"""


class RecordStore(ABC):
    """Abstract base class for analysis record stores"""

    @abstractmethod
    def create(self, record: AnalysisRecord) -> None:
        """
        Store a new record.

        Raises:
            StoreConflict: If a record with the same video id already exists
        """
        pass

    @abstractmethod
    def get(self, video_id: str) -> Optional[AnalysisRecord]:
        """
        Get a record with its tickets.

        Returns:
            AnalysisRecord if found, None otherwise
        """
        pass

    @abstractmethod
    def conditional_update(self, video_id: str, expected_status: str, changes: Dict[str, Any]) -> AnalysisRecord:
        """
        Apply changes to a record only if it is still in the expected status.

        Args:
            video_id: ID of the record
            expected_status: Status the record must currently have
            changes: Record fields to set (status, completed_at, error, report)

        Returns:
            The updated record

        Raises:
            StoreConflict: If the record is no longer in the expected status
            NotFound: If the record does not exist
        """
        pass

    @abstractmethod
    def save_ticket(self, video_id: str, ticket: JobTicket) -> bool:
        """
        Write one ticket of a record.

        The write is skipped when it would change the status of a ticket
        that is already terminal (see models.can_overwrite_ticket).

        Returns:
            True if the ticket was written, False if the guard rejected it
        """
        pass

    @abstractmethod
    def list_records(self, status: Optional[str] = None) -> List[AnalysisRecord]:
        """
        List records, optionally only those in a given status.

        Returns:
            Records in no particular order
        """
        pass

    def connect(self) -> None:
        """Open connections; no-op for stores that need none"""

    def close(self) -> None:
        """Release connections; no-op for stores that need none"""
