"""Builders for raw Rekognition detections and a scripted capability provider."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from analysis_worker.adapters.base import CapabilityProvider
from analysis_worker.models import ProviderStatus, VideoRef, TICKET_PENDING, TICKET_SUCCEEDED, TICKET_FAILED
from analysis_worker.payloads import validate_payload


def label_detection(timestamp: int, name: str, confidence: float,
                    bounding_box: Optional[Dict[str, float]] = None) -> Dict[str, Any]:
    instances = [{"BoundingBox": bounding_box, "Confidence": confidence}] if bounding_box else []
    return {
        "Timestamp": timestamp,
        "Label": {"Name": name, "Confidence": confidence, "Instances": instances},
    }


def person_detection(timestamp: int, index: int) -> Dict[str, Any]:
    return {
        "Timestamp": timestamp,
        "Person": {"Index": index, "BoundingBox": {"Width": 0.1, "Height": 0.3, "Left": 0.2, "Top": 0.4}},
    }


def face_detection(timestamp: int, confidence: float = 99.0) -> Dict[str, Any]:
    return {"Timestamp": timestamp, "Face": {"Confidence": confidence}}


def soccer_video(key: str = "uploads/match 1.mp4") -> VideoRef:
    return VideoRef(bucket="soccer-uploads", key=key, size_bytes=5_000_000, name=key.rsplit("/", 1)[-1])


class TickingClock:
    """Deterministic clock advancing one second per reading"""

    def __init__(self):
        self.ticks = 0
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            self.ticks += 1
            moment = datetime(2024, 5, 1, tzinfo=timezone.utc) + timedelta(seconds=self.ticks)
        return moment.isoformat()


class FakeProvider(CapabilityProvider):
    """
    Scripted capability provider.

    Job ids are ``{tag}-{kind}``. Jobs report pending until a test decides
    their outcome with succeed(), fail() or raise_on_poll().
    """

    def __init__(self):
        self.submitted: List[tuple] = []
        self.polls: List[tuple] = []
        self.results: Dict[str, Any] = {}
        self.submit_errors: Dict[str, Exception] = {}
        self._lock = threading.Lock()

    def submit_job(self, kind: str, video: VideoRef, tag: str) -> str:
        if kind in self.submit_errors:
            raise self.submit_errors[kind]
        with self._lock:
            self.submitted.append((kind, video.key, tag))
        return f"{tag}-{kind}"

    def poll_job(self, kind: str, job_id: str) -> ProviderStatus:
        with self._lock:
            self.polls.append((kind, job_id))
        result = self.results.get(job_id, ProviderStatus(status=TICKET_PENDING))
        if isinstance(result, Exception):
            raise result
        return result

    def succeed(self, video_id: str, kind: str, detections: List[Dict[str, Any]]) -> None:
        payload = validate_payload(kind, detections)
        self.results[f"{video_id}-{kind}"] = ProviderStatus(status=TICKET_SUCCEEDED, payload=payload)

    def fail(self, video_id: str, kind: str, message: str = "Unsupported codec") -> None:
        self.results[f"{video_id}-{kind}"] = ProviderStatus(status=TICKET_FAILED, message=message)

    def raise_on_poll(self, video_id: str, kind: str, error: Exception) -> None:
        self.results[f"{video_id}-{kind}"] = error
