import pytest

from analysis_worker.errors import NotFound
from analysis_worker.models import STATUS_ANALYZING
from analysis_worker.polling import PollPolicy, wait_for_report, POLL_COMPLETED, POLL_FAILED, POLL_TIMED_OUT

from factories import face_detection, label_detection, soccer_video

VIDEO_ID = "uploads-match-1-mp4"


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_returns_completed_once_jobs_finish(orchestrator, provider):
    orchestrator.submit_jobs(soccer_video())
    fake = FakeTime()

    def finish_after_two_checks(seconds):
        fake.sleep(seconds)
        if len(fake.sleeps) == 2:
            provider.succeed(VIDEO_ID, "label", [label_detection(1000, "Ball", 90.0)])
            provider.succeed(VIDEO_ID, "face", [face_detection(1000)])
            provider.succeed(VIDEO_ID, "moderation", [])

    result = wait_for_report(orchestrator, VIDEO_ID, PollPolicy(interval_sec=5, max_wait_sec=60),
                             sleep=finish_after_two_checks, clock=fake.clock)

    assert result.outcome == POLL_COMPLETED
    assert result.record.report is not None
    assert fake.sleeps == [5, 5]


def test_returns_failed_when_all_jobs_fail(orchestrator, provider):
    orchestrator.submit_jobs(soccer_video())
    for kind in ("label", "face", "moderation"):
        provider.fail(VIDEO_ID, kind)
    fake = FakeTime()

    result = wait_for_report(orchestrator, VIDEO_ID, PollPolicy(), sleep=fake.sleep, clock=fake.clock)

    assert result.outcome == POLL_FAILED
    assert fake.sleeps == []


def test_times_out_without_touching_the_record(orchestrator):
    orchestrator.submit_jobs(soccer_video())
    fake = FakeTime()

    result = wait_for_report(orchestrator, VIDEO_ID, PollPolicy(interval_sec=4, max_wait_sec=10),
                             sleep=fake.sleep, clock=fake.clock)

    assert result.outcome == POLL_TIMED_OUT
    assert result.timed_out
    assert fake.sleeps == [4, 4, 2]
    assert orchestrator.get(VIDEO_ID).status == STATUS_ANALYZING


def test_unknown_video_raises(orchestrator):
    with pytest.raises(NotFound):
        wait_for_report(orchestrator, "missing", PollPolicy(), sleep=lambda _: None, clock=lambda: 0.0)
