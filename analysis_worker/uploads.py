"""
Upload trigger handling.

Turns storage upload events into video references and decides whether an
uploaded object is worth submitting for analysis.
"""

import hashlib
import logging
import os
import re
from typing import Any, Dict, List
from urllib.parse import unquote_plus

from .errors import SubmissionError
from .models import VideoRef

logger = logging.getLogger("analysis_worker")


VIDEO_EXTENSIONS = ('.mp4', '.mov', '.avi')
# Objects above this size are accepted whatever their extension
MIN_VIDEO_SIZE_BYTES = 100_000
# Rekognition JobTag limit
MAX_VIDEO_ID_LENGTH = 256


def video_id_for_key(key: str) -> str:
    """
    Derive the stable video id from an object key.

    The id travels as the Rekognition job tag, so ids longer than a tag
    keep their prefix and end with a digest of the full key.
    """
    video_id = re.sub(r'[^a-zA-Z0-9]', '-', key)
    if len(video_id) <= MAX_VIDEO_ID_LENGTH:
        return video_id
    digest = hashlib.sha256(key.encode('utf-8')).hexdigest()[:16]
    return f"{video_id[:MAX_VIDEO_ID_LENGTH - len(digest) - 1]}-{digest}"


def looks_like_video(video: VideoRef) -> bool:
    lowered = video.key.lower()
    if any(extension in lowered for extension in VIDEO_EXTENSIONS):
        return True
    return video.size_bytes is not None and video.size_bytes > MIN_VIDEO_SIZE_BYTES


def validate_upload(video: VideoRef) -> None:
    """
    Reject uploads that are clearly not videos.

    Raises:
        SubmissionError: If the object is neither a known video type nor large enough
    """
    if not looks_like_video(video):
        raise SubmissionError(f"File {video.key} is not a valid video file")


def parse_s3_event(event: Dict[str, Any]) -> List[VideoRef]:
    """
    Extract video references from an S3 object-created event.

    Object keys arrive URL-encoded and are decoded here.
    """
    videos = []
    for record in event.get('Records', []):
        s3 = record.get('s3') or {}
        bucket = (s3.get('bucket') or {}).get('name')
        obj = s3.get('object') or {}
        key = obj.get('key')
        if not bucket or not key:
            logger.warning(f"Skipping upload event record without bucket or key: {record}")
            continue

        key = unquote_plus(key)
        videos.append(VideoRef(
            bucket=bucket,
            key=key,
            size_bytes=obj.get('size'),
            name=os.path.basename(key),
        ))
    return videos
