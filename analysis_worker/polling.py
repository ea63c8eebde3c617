"""
Bounded client-side polling for a finished report.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .models import AnalysisRecord, STATUS_COMPLETED, STATUS_FAILED
from .orchestrator import AnalysisOrchestrator

logger = logging.getLogger("analysis_worker")


POLL_COMPLETED = "completed"
POLL_FAILED = "failed"
POLL_TIMED_OUT = "timed_out"


@dataclass
class PollPolicy:
    """How often and for how long a caller waits for a report"""
    interval_sec: float = 5.0
    max_wait_sec: float = 300.0


@dataclass
class PollResult:
    outcome: str
    record: AnalysisRecord

    @property
    def timed_out(self) -> bool:
        return self.outcome == POLL_TIMED_OUT


def wait_for_report(orchestrator: AnalysisOrchestrator, video_id: str, policy: PollPolicy,
                    sleep: Callable[[float], None] = time.sleep,
                    clock: Callable[[], float] = time.monotonic) -> PollResult:
    """
    Refresh a record until it is terminal or the wait budget runs out.

    Timing out leaves the record untouched; it keeps analyzing and a later
    call can pick it up again.

    Args:
        orchestrator: Orchestrator owning the record
        video_id: ID of the record to wait for
        policy: Poll interval and maximum wait
        sleep: Sleep function, injectable for tests
        clock: Monotonic clock, injectable for tests

    Returns:
        PollResult with outcome completed, failed or timed_out

    Raises:
        NotFound: If no record exists for the video id
    """
    deadline = clock() + policy.max_wait_sec
    attempts = 0

    while True:
        attempts += 1
        record = orchestrator.refresh(video_id).record
        if record.status == STATUS_COMPLETED:
            return PollResult(outcome=POLL_COMPLETED, record=record)
        if record.status == STATUS_FAILED:
            return PollResult(outcome=POLL_FAILED, record=record)

        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning(f"Timed out waiting for report of video {video_id} after {attempts} checks")
            return PollResult(outcome=POLL_TIMED_OUT, record=record)

        logger.debug(f"Report for video {video_id} not ready (check {attempts}), retrying in {policy.interval_sec}s")
        sleep(min(policy.interval_sec, remaining))
