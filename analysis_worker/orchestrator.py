"""
Analysis orchestration.

Drives each analysis record through submission, job tracking and
finalization. The orchestrator is the only component that writes to the
record store, and every record status change it makes is a
compare-and-swap on the previous status, so concurrent refreshes and
notifications for the same video converge on a single terminal state.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Any, List, Sequence, Tuple

from .adapters.base import CapabilityProvider, RecordStore
from .aggregator import Evaluation, evaluate
from .errors import (
    AllJobsFailed, JobFailure, NotFound, PayloadTooLarge, StoreConflict, SubmissionError, TransientPollError,
)
from .logging_setup import log_exception
from .models import (
    AnalysisRecord, JobTicket, Notification, RecordSummary, RefreshOutcome, VideoRef,
    DEFAULT_JOB_KINDS, STATUS_PROCESSING, STATUS_ANALYZING, STATUS_COMPLETED, STATUS_FAILED,
    TICKET_PENDING, TICKET_SUCCEEDED, TICKET_FAILED,
    OUTCOME_STILL_PENDING, OUTCOME_READY, OUTCOME_TERMINAL,
    utc_now,
)
from .report import build_report, serialize_report
from .uploads import validate_upload, video_id_for_key

logger = logging.getLogger("analysis_worker")


class AnalysisOrchestrator:
    """Manages the lifecycle of analysis records"""

    MAX_TRANSITION_ATTEMPTS = 3

    def __init__(self, provider: CapabilityProvider, store: RecordStore,
                 job_kinds: Sequence[str] = DEFAULT_JOB_KINDS,
                 clock: Callable[[], str] = utc_now):
        self.provider = provider
        self.store = store
        self.job_kinds = tuple(job_kinds)
        self.clock = clock
        self._stats_lock = threading.Lock()
        self.stats = self._new_stats()

    def _new_stats(self) -> Dict[str, Any]:
        return {
            'records_submitted': 0,
            'records_completed': 0,
            'records_failed': 0,
            'finalize_conflicts': 0,
            'transient_poll_errors': 0,
            'store_errors': 0,
            'status_conflicts': 0,
            'notifications_applied': 0,
            'notifications_ignored': 0,
            'start_time': datetime.now()
        }

    def _count(self, name: str) -> None:
        # Counters are bumped from the worker loop and the HTTP thread pool
        with self._stats_lock:
            self.stats[name] += 1

    def submit_jobs(self, video: VideoRef) -> AnalysisRecord:
        """
        Create a record for an uploaded video and start one job per kind.

        Submission is all-or-nothing for the caller: the first rejected job
        marks the record failed. Tickets stored for earlier kinds stay in
        place for diagnostics.

        Args:
            video: Storage reference from the upload event

        Returns:
            The record, in analyzing on success or failed otherwise
        """
        video_id = video_id_for_key(video.key)
        record = AnalysisRecord(
            video_id=video_id,
            status=STATUS_PROCESSING,
            created_at=self.clock(),
            video_key=video.key,
            bucket=video.bucket,
            expected_kinds=list(self.job_kinds),
        )

        try:
            self.store.create(record)
        except StoreConflict:
            logger.info(f"Record {video_id} already exists, ignoring duplicate upload of {video.key}")
            return self.get(video_id)

        self._count('records_submitted')
        logger.info(f"Processing video {video.key} with ID {video_id}")

        try:
            validate_upload(video)
            for kind in self.job_kinds:
                job_id = self.provider.submit_job(kind, video, tag=video_id)
                ticket = JobTicket(kind=kind, job_id=job_id, status=TICKET_PENDING, updated_at=self.clock())
                self.store.save_ticket(video_id, ticket)
        except SubmissionError as e:
            logger.error(f"Submission failed for video {video_id}: {e}")
            return self._fail(video_id, STATUS_PROCESSING, str(e))
        except Exception as e:
            log_exception(logger, f"Unexpected error submitting jobs for video {video_id}: {e}")
            return self._fail(video_id, STATUS_PROCESSING, f"Unexpected error during submission: {e}")

        stored, _ = self._transition(video_id, STATUS_PROCESSING, {'status': STATUS_ANALYZING})
        logger.info(f"Submitted {len(self.job_kinds)} jobs for video {video_id}")
        return stored

    def refresh(self, video_id: str) -> RefreshOutcome:
        """
        Refresh the tickets of a record and finalize it when possible.

        Store errors after the initial read are logged and reported as
        still pending; the next refresh starts again from the stored state.

        Args:
            video_id: ID of the record

        Returns:
            RefreshOutcome describing what the refresh observed

        Raises:
            NotFound: If no record exists for the video id
        """
        record = self.get(video_id)
        if record.is_terminal:
            return RefreshOutcome(outcome=OUTCOME_TERMINAL, record=record)
        if record.status == STATUS_PROCESSING:
            logger.debug(f"Record {video_id} is still submitting jobs")
            return RefreshOutcome(outcome=OUTCOME_STILL_PENDING, record=record)

        try:
            return self._advance(record)
        except Exception as e:
            self._count('store_errors')
            log_exception(logger, f"Refresh of video {video_id} interrupted, retrying on next refresh: {e}")
            return RefreshOutcome(outcome=OUTCOME_STILL_PENDING, record=record)

    def _advance(self, record: AnalysisRecord) -> RefreshOutcome:
        video_id = record.video_id
        observed, write_errors = self._refresh_tickets(record)
        if write_errors:
            logger.warning(f"{write_errors} ticket write(s) failed for video {video_id}, evaluating on next refresh")
            return RefreshOutcome(outcome=OUTCOME_STILL_PENDING, record=record)

        if observed:
            record = self.get(video_id)
            if record.is_terminal:
                return RefreshOutcome(outcome=OUTCOME_TERMINAL, record=record)

        evaluation = evaluate(record.tickets, record.expected_kinds)
        if evaluation.outcome == OUTCOME_STILL_PENDING:
            logger.debug(f"Analysis still in progress for video {video_id}")
            return RefreshOutcome(outcome=OUTCOME_STILL_PENDING, record=record)
        if evaluation.outcome == OUTCOME_READY:
            return self._finalize(record, evaluation)
        return self._fail_all(record, evaluation)

    def _refresh_tickets(self, record: AnalysisRecord) -> Tuple[bool, int]:
        """
        Poll the provider for every ticket without final results.

        Returns:
            Tuple of whether any ticket reached a terminal status during this
            pass and how many ticket writes failed
        """
        observed = False
        write_errors = 0
        for kind, ticket in record.tickets.items():
            if not (ticket.status == TICKET_PENDING or ticket.awaiting_payload) or not ticket.job_id:
                continue

            try:
                result = self.provider.poll_job(kind, ticket.job_id)
            except TransientPollError as e:
                self._count('transient_poll_errors')
                logger.warning(f"Status check for {kind} job {ticket.job_id} failed, retrying on next refresh: {e}")
                continue
            except Exception as e:
                self._count('transient_poll_errors')
                log_exception(logger, f"Unexpected error checking {kind} job {ticket.job_id}: {e}")
                continue

            if result.status == TICKET_PENDING:
                continue
            if ticket.awaiting_payload and result.status != TICKET_SUCCEEDED:
                self._count('status_conflicts')
                logger.warning(
                    f"Conflicting status for {kind} job {ticket.job_id} of video {record.video_id}: "
                    f"notified succeeded, provider reports {result.status}"
                )
                continue

            if result.status == TICKET_FAILED:
                logger.error(f"{JobFailure(kind, result.message)} (video {record.video_id})")

            updated = JobTicket(
                kind=kind,
                job_id=ticket.job_id,
                status=result.status,
                payload=result.payload,
                message=result.message,
                updated_at=self.clock(),
            )
            if self._store_ticket(record.video_id, updated):
                observed = True
            else:
                write_errors += 1

        return observed, write_errors

    def _store_ticket(self, video_id: str, ticket: JobTicket) -> bool:
        """
        Write a polled ticket.

        Results the store cannot hold end the ticket: it is marked failed, or,
        when a notification already marked it succeeded, kept succeeded with
        its detections dropped. Either way the next refresh does not fetch
        them again.

        Returns:
            False if the write raised; the kind then stays as stored
        """
        try:
            try:
                self.store.save_ticket(video_id, ticket)
            except PayloadTooLarge as e:
                logger.error(f"{ticket.kind} results for video {video_id} cannot be stored: {e}")
                message = f"Results too large to store: {e}"
                failed = replace(ticket, status=TICKET_FAILED, payload=None, message=message)
                if not self.store.save_ticket(video_id, failed):
                    count = (ticket.payload or {}).get('detection_count', 0)
                    stripped = {'kind': ticket.kind, 'detection_count': count}
                    self.store.save_ticket(video_id, replace(ticket, payload=stripped, message=message))
            return True
        except Exception as e:
            self._count('store_errors')
            log_exception(logger, f"Failed to store {ticket.kind} ticket for video {video_id}: {e}")
            return False

    def _finalize(self, record: AnalysisRecord, evaluation: Evaluation) -> RefreshOutcome:
        video_id = record.video_id
        if evaluation.failed_kinds:
            logger.warning(f"Finalizing video {video_id} without results from: {', '.join(evaluation.failed_kinds)}")

        try:
            blob = serialize_report(build_report(evaluation.payloads))
        except Exception as e:
            log_exception(logger, f"Report generation failed for video {video_id}: {e}")
            stored = self._fail(video_id, STATUS_ANALYZING, f"Report generation failed: {e}")
            return RefreshOutcome(outcome=OUTCOME_TERMINAL, record=stored)

        try:
            stored, written = self._transition(video_id, STATUS_ANALYZING, {
                'status': STATUS_COMPLETED,
                'report': blob,
                'completed_at': self.clock(),
            })
        except PayloadTooLarge as e:
            logger.error(f"Report for video {video_id} cannot be stored: {e}")
            stored = self._fail(video_id, STATUS_ANALYZING, f"Report too large to store: {e}")
            return RefreshOutcome(outcome=OUTCOME_TERMINAL, record=stored)

        if written:
            self._count('records_completed')
            logger.info(f"Analysis completed and stored for video {video_id}")
        else:
            self._count('finalize_conflicts')
            logger.info(f"Video {video_id} was already finalized by a concurrent refresh")
        return RefreshOutcome(outcome=OUTCOME_READY, record=stored, written=written)

    def _fail_all(self, record: AnalysisRecord, evaluation: Evaluation) -> RefreshOutcome:
        failures = []
        for kind in evaluation.failed_kinds:
            ticket = record.tickets.get(kind)
            failures.append(JobFailure(kind, ticket.message if ticket else "job was never created"))

        error = str(AllJobsFailed(failures))
        logger.error(f"Analysis failed for video {record.video_id}: {error}")
        stored, written = self._transition(record.video_id, STATUS_ANALYZING, {
            'status': STATUS_FAILED,
            'error': error,
        })
        if written:
            self._count('records_failed')
        return RefreshOutcome(outcome=evaluation.outcome, record=stored, written=written)

    def _fail(self, video_id: str, expected_status: str, error: str) -> AnalysisRecord:
        stored, written = self._transition(video_id, expected_status, {
            'status': STATUS_FAILED,
            'error': error,
        })
        if written:
            self._count('records_failed')
        return stored

    def _transition(self, video_id: str, expected_status: str, changes: Dict[str, Any]) -> Tuple[AnalysisRecord, bool]:
        """
        Move a record out of expected_status with a conditional write.

        On conflict the record is re-read: if another writer already moved it
        on, its state is returned unchanged; if it is still in the expected
        status the write is retried.

        Returns:
            Tuple of the stored record and whether this call wrote it
        """
        for attempt in range(1, self.MAX_TRANSITION_ATTEMPTS + 1):
            try:
                return self.store.conditional_update(video_id, expected_status, changes), True
            except StoreConflict:
                current = self.get(video_id)
                if current.status != expected_status:
                    logger.debug(
                        f"Record {video_id} moved from {expected_status} to {current.status} concurrently, "
                        f"skipping write of {changes.get('status')}"
                    )
                    return current, False
                logger.warning(f"Conditional write conflict on {video_id} (attempt {attempt}/{self.MAX_TRANSITION_ATTEMPTS})")

        raise StoreConflict(video_id, expected_status)

    def apply_notification(self, notification: Notification) -> bool:
        """
        Apply an out-of-band job status event to its ticket.

        Only the named ticket changes; finalization is left to the next
        refresh. Duplicate terminal events are no-ops and conflicting terminal
        events are logged and dropped.

        Args:
            notification: Parsed job status event

        Returns:
            True if the ticket was updated
        """
        video_id = notification.video_id
        kind = notification.kind
        record = self.store.get(video_id)
        if record is None:
            logger.error(f"No record found for video {video_id} (notification for {kind} job {notification.job_id})")
            self._count('notifications_ignored')
            return False
        if record.is_terminal:
            logger.info(f"Ignoring {kind} notification for video {video_id}, record already {record.status}")
            self._count('notifications_ignored')
            return False

        ticket = record.tickets.get(kind)
        if ticket is not None:
            if ticket.job_id and ticket.job_id != notification.job_id:
                logger.warning(
                    f"Ignoring {kind} notification for unknown job {notification.job_id} "
                    f"of video {video_id} (tracking {ticket.job_id})"
                )
                self._count('notifications_ignored')
                return False
            if ticket.is_terminal:
                if ticket.status == notification.status:
                    logger.debug(f"Duplicate {notification.status} notification for {kind} job {notification.job_id}")
                else:
                    logger.warning(
                        f"Conflicting notification for {kind} job {notification.job_id} of video {video_id}: "
                        f"ticket is {ticket.status}, notification says {notification.status}"
                    )
                self._count('notifications_ignored')
                return False
        elif kind not in record.expected_kinds:
            logger.warning(f"Ignoring notification for unexpected job kind {kind} of video {video_id}")
            self._count('notifications_ignored')
            return False

        updated = JobTicket(
            kind=kind,
            job_id=notification.job_id,
            status=notification.status,
            payload=notification.payload,
            message=notification.message,
            updated_at=self.clock(),
        )
        written = self.store.save_ticket(video_id, updated)
        if written:
            self._count('notifications_applied')
            logger.info(f"Updated {kind} status for video {video_id}: {notification.status}")
        else:
            self._count('notifications_ignored')
        return written

    def get(self, video_id: str) -> AnalysisRecord:
        """
        Get a record as stored; completed records carry their cached report.

        Raises:
            NotFound: If no record exists for the video id
        """
        record = self.store.get(video_id)
        if record is None:
            raise NotFound(video_id)
        return record

    def list_records(self) -> List[RecordSummary]:
        """List record summaries, newest first"""
        summaries = [record.summary() for record in self.store.list_records()]
        summaries.sort(key=lambda summary: summary.created_at or "", reverse=True)
        return summaries

    def pending_video_ids(self) -> List[str]:
        """IDs of records waiting on analysis jobs, oldest first"""
        records = self.store.list_records(status=STATUS_ANALYZING)
        records.sort(key=lambda record: record.created_at or "")
        return [record.video_id for record in records]

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        with self._stats_lock:
            stats = dict(self.stats)
        uptime = (datetime.now() - stats['start_time']).total_seconds()
        finished = stats['records_completed'] + stats['records_failed']

        return {
            'records_submitted': stats['records_submitted'],
            'records_completed': stats['records_completed'],
            'records_failed': stats['records_failed'],
            'finalize_conflicts': stats['finalize_conflicts'],
            'transient_poll_errors': stats['transient_poll_errors'],
            'store_errors': stats['store_errors'],
            'status_conflicts': stats['status_conflicts'],
            'notifications_applied': stats['notifications_applied'],
            'notifications_ignored': stats['notifications_ignored'],
            'uptime_seconds': uptime,
            'success_rate': (
                stats['records_completed'] / finished
                if finished > 0 else 0
            )
        }

    def reset_stats(self) -> None:
        """Reset orchestrator statistics"""
        with self._stats_lock:
            self.stats = self._new_stats()
        logger.info("Orchestrator statistics reset")
