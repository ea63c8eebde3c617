"""
Schemas for raw detection payloads.

Every job kind has its own payload model; together they form a tagged
union on the ``kind`` field. Results coming back from the capability
provider are validated here before they are stored on a ticket, so the
aggregator and the report builder only ever see well-formed detections.
Field aliases follow the Rekognition Video response shapes.

Stored payloads keep only what the report builder reads. A long match
yields thousands of detections, and the raw Rekognition shapes would not
fit in a single store item.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _AwsShape(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BoundingBox(_AwsShape):
    """Relative bounding box (0-1) of a detection within the frame"""
    width: Optional[float] = Field(default=None, alias="Width")
    height: Optional[float] = Field(default=None, alias="Height")
    left: Optional[float] = Field(default=None, alias="Left")
    top: Optional[float] = Field(default=None, alias="Top")


class LabelInstance(_AwsShape):
    bounding_box: Optional[BoundingBox] = Field(default=None, alias="BoundingBox")
    confidence: Optional[float] = Field(default=None, alias="Confidence")


class Label(_AwsShape):
    name: str = Field(alias="Name")
    confidence: float = Field(alias="Confidence")
    instances: List[LabelInstance] = Field(default_factory=list, alias="Instances")


class LabelDetection(_AwsShape):
    timestamp: int = Field(alias="Timestamp", description="Milliseconds from the start of the video")
    label: Label = Field(alias="Label")


class Face(_AwsShape):
    bounding_box: Optional[BoundingBox] = Field(default=None, alias="BoundingBox")
    confidence: Optional[float] = Field(default=None, alias="Confidence")


class FaceDetection(_AwsShape):
    timestamp: int = Field(alias="Timestamp")
    face: Face = Field(alias="Face")


class ModerationLabel(_AwsShape):
    name: str = Field(alias="Name")
    confidence: float = Field(alias="Confidence")
    parent_name: Optional[str] = Field(default=None, alias="ParentName")


class ModerationDetection(_AwsShape):
    timestamp: int = Field(alias="Timestamp")
    moderation_label: ModerationLabel = Field(alias="ModerationLabel")


class Person(_AwsShape):
    index: int = Field(alias="Index")
    bounding_box: Optional[BoundingBox] = Field(default=None, alias="BoundingBox")


class PersonDetection(_AwsShape):
    timestamp: int = Field(alias="Timestamp")
    person: Person = Field(alias="Person")


class _Payload(BaseModel):
    detection_count: int = Field(default=0, description="Detections the provider returned")


class LabelPayload(_Payload):
    kind: Literal["label"] = "label"
    detections: List[LabelDetection] = Field(default_factory=list)


class FacePayload(_Payload):
    kind: Literal["face"] = "face"
    detections: List[FaceDetection] = Field(default_factory=list)


class ModerationPayload(_Payload):
    kind: Literal["moderation"] = "moderation"
    detections: List[ModerationDetection] = Field(default_factory=list)


class PersonPayload(_Payload):
    kind: Literal["person"] = "person"
    detections: List[PersonDetection] = Field(default_factory=list)


JobPayload = Annotated[
    Union[LabelPayload, FacePayload, ModerationPayload, PersonPayload],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(JobPayload)

# Fields kept when a payload is stored, per kind. Face and moderation
# results only feed the report sources, so their detections are dropped.
STORED_FIELDS: Dict[str, Dict[str, Any]] = {
    "label": {
        "kind": True,
        "detection_count": True,
        "detections": {"__all__": {
            "timestamp": True,
            "label": {"name": True, "confidence": True, "instances": {0: {"bounding_box": True}}},
        }},
    },
    "person": {
        "kind": True,
        "detection_count": True,
        "detections": {"__all__": {"timestamp": True, "person": {"index": True}}},
    },
    "face": {"kind": True, "detection_count": True},
    "moderation": {"kind": True, "detection_count": True},
}


def validate_payload(kind: str, detections: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate raw provider detections for a job kind.

    Args:
        kind: Job kind the detections belong to
        detections: Raw detection items as returned by the provider

    Returns:
        The compacted payload as a JSON-compatible dictionary

    Raises:
        pydantic.ValidationError: If the detections do not match the schema
    """
    payload = _payload_adapter.validate_python({
        "kind": kind,
        "detections": detections,
        "detection_count": len(detections),
    })
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True, include=STORED_FIELDS[payload.kind])


def parse_payload(data: Dict[str, Any]) -> JobPayload:
    """Parse a stored payload dictionary back into its typed model"""
    return _payload_adapter.validate_python(data)
