"""
Soccer report builder.

Pure transformation from the succeeded job payloads of a record into the
domain report stored on the record once it completes. The output only
depends on the input payloads, so rebuilding from the same payloads always
serializes to the same bytes.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import KIND_LABEL, KIND_PERSON
from .payloads import BoundingBox, JobPayload, LabelDetection, PersonDetection, parse_payload

logger = logging.getLogger("analysis_worker")


# Soccer-specific labels to look for
SOCCER_LABELS = (
    'Soccer', 'Football', 'Ball', 'Goal', 'Field', 'Grass', 'Stadium',
    'Player', 'Athlete', 'Running', 'Kicking', 'Sport', 'Team Sport',
    'Referee', 'Crowd', 'Audience', 'Celebration', 'Score',
)

SOCCER_ACTIVITIES = (
    'Running', 'Kicking', 'Jumping', 'Celebrating', 'Playing',
    'Dribbling', 'Passing', 'Shooting', 'Defending', 'Goalkeeping',
)

KEY_MOMENT_MIN_CONFIDENCE = 85.0
MAX_KEY_MOMENTS = 10
TOP_ACTIVITIES = 3
# Tracks are reported as one-second spans per detection
TRACK_SPAN_SEC = 1.0


class _ReportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Scene(_ReportModel):
    timestamp: int
    labels: List[str]
    description: str


class ActivityInstance(_ReportModel):
    timestamp: float
    bounding_box: Optional[BoundingBox] = None


class Activity(_ReportModel):
    confidence: float
    instances: List[ActivityInstance] = Field(default_factory=list)


class KeyMoment(_ReportModel):
    timestamp: float
    description: str
    confidence: float
    source: str


class TimelineSpan(_ReportModel):
    start: float
    end: float


class Player(_ReportModel):
    track_id: int
    appearances: int
    timeline: List[TimelineSpan] = Field(default_factory=list)


class DomainReport(_ReportModel):
    summary: str
    scenes: List[Scene] = Field(default_factory=list)
    activities: Dict[str, Activity] = Field(default_factory=dict)
    key_moments: List[KeyMoment] = Field(default_factory=list)
    players: List[Player] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)


def _matches(name: str, vocabulary) -> bool:
    lowered = name.lower()
    return any(term.lower() in lowered for term in vocabulary)


def _seconds(timestamp_ms: int) -> float:
    return timestamp_ms / 1000


def extract_scenes(detections: List[LabelDetection]) -> List[Scene]:
    """Group soccer labels into one scene per whole second of video"""
    buckets: Dict[int, List[str]] = {}
    for detection in detections:
        name = detection.label.name
        if not _matches(name, SOCCER_LABELS):
            continue
        labels = buckets.setdefault(detection.timestamp // 1000, [])
        if name not in labels:
            labels.append(name)

    return [
        Scene(
            timestamp=second,
            labels=labels,
            description=f"Scene at {second}s: {', '.join(labels)}",
        )
        for second, labels in sorted(buckets.items())
    ]


def extract_activities(detections: List[LabelDetection]) -> Dict[str, Activity]:
    """
    Collect activity labels.

    The confidence of an activity is the one seen on its first occurrence;
    every occurrence adds an instance.
    """
    activities: Dict[str, Activity] = {}
    for detection in detections:
        name = detection.label.name
        if not _matches(name, SOCCER_ACTIVITIES):
            continue

        instances = detection.label.instances
        instance = ActivityInstance(
            timestamp=_seconds(detection.timestamp),
            bounding_box=instances[0].bounding_box if instances else None,
        )

        if name in activities:
            activities[name].instances.append(instance)
        else:
            activities[name] = Activity(confidence=detection.label.confidence, instances=[instance])

    return activities


def select_key_moments(detections: List[LabelDetection], activities: Dict[str, Activity]) -> List[KeyMoment]:
    """
    Pick the highest-confidence moments across labels and activities.

    Candidates are all label detections followed by all activity instances.
    Only confidences above the threshold are kept; the top entries by
    confidence are then presented in timestamp order. Equal confidences keep
    candidate order.
    """
    candidates = [
        KeyMoment(
            timestamp=_seconds(detection.timestamp),
            description=f"{detection.label.name} detected",
            confidence=detection.label.confidence,
            source="label",
        )
        for detection in detections
    ]
    for label, activity in activities.items():
        candidates.extend(
            KeyMoment(
                timestamp=instance.timestamp,
                description=f"{label} activity",
                confidence=activity.confidence,
                source="activity",
            )
            for instance in activity.instances
        )

    confident = [moment for moment in candidates if moment.confidence > KEY_MOMENT_MIN_CONFIDENCE]
    top = sorted(confident, key=lambda moment: moment.confidence, reverse=True)[:MAX_KEY_MOMENTS]
    return sorted(top, key=lambda moment: moment.timestamp)


def extract_players(detections: List[PersonDetection]) -> List[Player]:
    """Summarize tracked persons, one player per track index"""
    tracks: Dict[int, List[float]] = {}
    for detection in detections:
        tracks.setdefault(detection.person.index, []).append(_seconds(detection.timestamp))

    return [
        Player(
            track_id=track_id,
            appearances=len(timestamps),
            timeline=[TimelineSpan(start=t, end=t + TRACK_SPAN_SEC) for t in timestamps],
        )
        for track_id, timestamps in sorted(tracks.items())
    ]


def summarize(scenes: List[Scene], activities: Dict[str, Activity], key_moments: List[KeyMoment],
              players: List[Player], tracking_available: bool) -> str:
    ranked = sorted(activities.items(), key=lambda item: len(item[1].instances), reverse=True)
    top_activities = [label for label, _ in ranked[:TOP_ACTIVITIES]]

    summary = (
        f"Soccer video analysis: Detected {len(scenes)} scenes. "
        f"Key activities include: {', '.join(top_activities) or 'none'}. "
        f"Found {len(key_moments)} significant moments with high confidence. "
    )
    if tracking_available:
        summary += f"Tracked {len(players)} players."
    else:
        summary += "Note: Player tracking unavailable."
    return summary


def build_report(payloads: Mapping[str, Union[Dict[str, Any], JobPayload]]) -> DomainReport:
    """
    Build the soccer report from succeeded job payloads.

    Args:
        payloads: Payloads keyed by job kind, either stored dictionaries or
            parsed payload models. Kinds that failed are simply absent.

    Returns:
        The merged DomainReport
    """
    parsed = {
        kind: parse_payload(payload) if isinstance(payload, dict) else payload
        for kind, payload in payloads.items()
    }

    label_payload = parsed.get(KIND_LABEL)
    labels = label_payload.detections if label_payload else []

    scenes = extract_scenes(labels)
    activities = extract_activities(labels)
    key_moments = select_key_moments(labels, activities)

    person_payload = parsed.get(KIND_PERSON)
    tracking_available = person_payload is not None
    players = extract_players(person_payload.detections) if tracking_available else []

    report = DomainReport(
        summary=summarize(scenes, activities, key_moments, players, tracking_available),
        scenes=scenes,
        activities=activities,
        key_moments=key_moments,
        players=players,
        sources=sorted(parsed.keys()),
    )

    logger.debug(
        f"Built report from {', '.join(report.sources) or 'no sources'}: "
        f"{len(scenes)} scenes, {len(activities)} activities, {len(key_moments)} key moments"
    )
    return report


def serialize_report(report: DomainReport) -> str:
    """Serialize a report to the JSON blob stored on the record"""
    return report.model_dump_json(by_alias=True, exclude_none=True)


def parse_report(blob: str) -> DomainReport:
    """Parse a stored report blob back into a DomainReport"""
    return DomainReport.model_validate_json(blob)
