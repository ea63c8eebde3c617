"""
Parsing of Rekognition job completion notifications.

Rekognition publishes one SNS message per finished job. The message reaches
the worker either as an SNS HTTP push (wrapped in an SNS envelope) or
through an SQS queue subscribed to the topic (wrapped in an envelope
unless raw delivery is enabled).
"""

import json
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    Notification,
    KIND_LABEL, KIND_FACE, KIND_MODERATION, KIND_PERSON,
    TICKET_SUCCEEDED, TICKET_FAILED,
)


API_KINDS = {
    "StartLabelDetection": KIND_LABEL,
    "StartFaceDetection": KIND_FACE,
    "StartContentModeration": KIND_MODERATION,
    "StartPersonTracking": KIND_PERSON,
}

NOTIFICATION_STATUS_MAP = {
    "SUCCEEDED": TICKET_SUCCEEDED,
    "FAILED": TICKET_FAILED,
    "ERROR": TICKET_FAILED,
}


class RekognitionJobMessage(BaseModel):
    """Body of a Rekognition Video completion message"""
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="JobId")
    status: str = Field(alias="Status")
    api: str = Field(alias="API")
    job_tag: str = Field(alias="JobTag")
    status_message: Optional[str] = Field(default=None, alias="StatusMessage")
    timestamp: Optional[int] = Field(default=None, alias="Timestamp")


def parse_job_message(message: Union[str, Dict[str, Any]]) -> Notification:
    """
    Convert a Rekognition completion message into a Notification.

    Args:
        message: The message as JSON text or already decoded

    Returns:
        Notification correlated to the video through the job tag

    Raises:
        ValueError: If the message is malformed or names an unknown API or status
    """
    if isinstance(message, str):
        message = json.loads(message)
    parsed = RekognitionJobMessage.model_validate(message)

    kind = API_KINDS.get(parsed.api)
    if kind is None:
        raise ValueError(f"Unsupported Rekognition API in notification: {parsed.api}")

    status = NOTIFICATION_STATUS_MAP.get(parsed.status.upper())
    if status is None:
        raise ValueError(f"Unsupported job status in notification: {parsed.status}")

    return Notification(
        job_id=parsed.job_id,
        video_id=parsed.job_tag,
        kind=kind,
        status=status,
        message=parsed.status_message,
    )


def is_sns_envelope(data: Dict[str, Any]) -> bool:
    return isinstance(data, dict) and "Type" in data and "Message" in data


def parse_sns_envelope(envelope: Dict[str, Any]) -> Optional[Notification]:
    """
    Parse an SNS envelope; returns None for anything but a Notification
    (subscription confirmations are handled by the caller).
    """
    if envelope.get("Type") != "Notification":
        return None
    return parse_job_message(envelope["Message"])


def parse_queue_body(body: str) -> Notification:
    """Parse the body of an SQS message delivered from the SNS topic"""
    data = json.loads(body)
    if is_sns_envelope(data):
        notification = parse_sns_envelope(data)
        if notification is None:
            raise ValueError(f"Unexpected SNS message type on queue: {data.get('Type')}")
        return notification
    return parse_job_message(data)
