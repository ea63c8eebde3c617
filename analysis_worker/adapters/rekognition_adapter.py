"""
AWS Rekognition Video adapter for the capability provider.

Starts asynchronous stored-video jobs and collects their paginated
results, validating them into typed payloads before they reach the
orchestrator.
"""

import hashlib
import logging
from typing import Optional, Dict, Any, List, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from .base import CapabilityProvider
from ..errors import SubmissionError, TransientPollError
from ..models import (
    ProviderStatus, VideoRef,
    KIND_LABEL, KIND_FACE, KIND_MODERATION, KIND_PERSON,
    TICKET_PENDING, TICKET_SUCCEEDED, TICKET_FAILED,
)
from ..payloads import validate_payload

logger = logging.getLogger("analysis_worker")


# kind -> (start operation, get operation, result items key)
KIND_OPERATIONS: Dict[str, Tuple[str, str, str]] = {
    KIND_LABEL: ("start_label_detection", "get_label_detection", "Labels"),
    KIND_FACE: ("start_face_detection", "get_face_detection", "Faces"),
    KIND_MODERATION: ("start_content_moderation", "get_content_moderation", "ModerationLabels"),
    KIND_PERSON: ("start_person_tracking", "get_person_tracking", "Persons"),
}

JOB_STATUS_MAP = {
    "IN_PROGRESS": TICKET_PENDING,
    "SUCCEEDED": TICKET_SUCCEEDED,
    "FAILED": TICKET_FAILED,
}


class RekognitionCapabilityProvider(CapabilityProvider):
    """Rekognition Video implementation of the capability provider"""

    def __init__(self, region: str = "us-east-1", sns_topic_arn: Optional[str] = None,
                 role_arn: Optional[str] = None, min_confidence: float = 50.0,
                 max_results: int = 1000, client=None):
        self.region = region
        self.sns_topic_arn = sns_topic_arn
        self.role_arn = role_arn
        self.min_confidence = min_confidence
        self.max_results = max_results
        self.rekognition = client

    def connect(self):
        """Initialize Rekognition client"""
        if self.rekognition is not None:
            return
        try:
            self.rekognition = boto3.client('rekognition', region_name=self.region)
            logger.info(f"Rekognition provider connected in region {self.region}")
        except Exception as e:
            logger.error(f"Failed to create Rekognition client: {e}")
            raise

    def _operations(self, kind: str) -> Tuple[str, str, str]:
        try:
            return KIND_OPERATIONS[kind]
        except KeyError:
            raise ValueError(f"Unsupported job kind: {kind}") from None

    @staticmethod
    def request_token(tag: str, kind: str) -> str:
        """Idempotency token so a replayed submission reuses the same job"""
        return hashlib.sha256(f"{tag}:{kind}".encode("utf-8")).hexdigest()[:64]

    def submit_job(self, kind: str, video: VideoRef, tag: str) -> str:
        if not self.rekognition:
            raise RuntimeError("Rekognition client not initialized. Call connect() first.")

        start_operation, _, _ = self._operations(kind)
        params: Dict[str, Any] = {
            "Video": {"S3Object": {"Bucket": video.bucket, "Name": video.key}},
            "JobTag": tag,
            "ClientRequestToken": self.request_token(tag, kind),
        }
        if kind in (KIND_LABEL, KIND_MODERATION):
            params["MinConfidence"] = self.min_confidence
        if self.sns_topic_arn and self.role_arn:
            params["NotificationChannel"] = {
                "SNSTopicArn": self.sns_topic_arn,
                "RoleArn": self.role_arn,
            }

        try:
            response = getattr(self.rekognition, start_operation)(**params)
        except (ClientError, BotoCoreError) as e:
            raise SubmissionError(f"{start_operation} failed: {e}", kind=kind) from e

        job_id = response.get("JobId")
        if not job_id:
            raise SubmissionError(f"{start_operation} returned no JobId", kind=kind)

        logger.info(f"Started {kind} job {job_id} for {video.bucket}/{video.key}")
        return job_id

    def poll_job(self, kind: str, job_id: str) -> ProviderStatus:
        if not self.rekognition:
            raise RuntimeError("Rekognition client not initialized. Call connect() first.")

        _, get_operation, items_key = self._operations(kind)
        items: List[Dict[str, Any]] = []
        next_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"JobId": job_id, "MaxResults": self.max_results}
            if next_token:
                params["NextToken"] = next_token

            try:
                response = getattr(self.rekognition, get_operation)(**params)
            except (ClientError, BotoCoreError) as e:
                raise TransientPollError(f"{get_operation} failed for job {job_id}: {e}", kind=kind, job_id=job_id) from e

            raw_status = (response.get("JobStatus") or "").strip().upper()
            status = JOB_STATUS_MAP.get(raw_status)
            if status is None:
                raise TransientPollError(f"Unknown status '{raw_status}' for job {job_id}", kind=kind, job_id=job_id)

            if status != TICKET_SUCCEEDED:
                return ProviderStatus(status=status, message=response.get("StatusMessage"))

            items.extend(response.get(items_key) or [])
            next_token = response.get("NextToken")
            if not next_token:
                break

        try:
            payload = validate_payload(kind, items)
        except ValidationError as e:
            logger.error(f"Invalid {kind} payload for job {job_id}: {e}")
            return ProviderStatus(
                status=TICKET_FAILED,
                message=f"Invalid {kind} payload: {e.error_count()} validation errors",
            )

        logger.info(f"Fetched {len(items)} {kind} detections for job {job_id}")
        return ProviderStatus(status=TICKET_SUCCEEDED, payload=payload)

    def close(self):
        """Drop Rekognition client"""
        self.rekognition = None
        logger.info("Rekognition provider closed")
