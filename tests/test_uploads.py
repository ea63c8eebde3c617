import pytest

from analysis_worker.errors import SubmissionError
from analysis_worker.models import VideoRef
from analysis_worker.uploads import parse_s3_event, validate_upload, video_id_for_key


def test_video_id_replaces_non_alphanumerics():
    assert video_id_for_key("uploads/match 1.mp4") == "uploads-match-1-mp4"
    assert video_id_for_key("Final_2024.MOV") == "Final-2024-MOV"


def test_long_keys_fit_in_a_job_tag():
    folder = "season-2024/" + "matchday/" * 40
    first = video_id_for_key(folder + "home.mp4")
    second = video_id_for_key(folder + "away.mp4")

    assert len(first) == 256
    assert first.startswith("season-2024-matchday-")
    assert first != second
    assert video_id_for_key(folder + "home.mp4") == first


def test_parse_s3_event_decodes_keys():
    event = {
        "Records": [
            {"s3": {"bucket": {"name": "soccer-uploads"}, "object": {"key": "uploads/match+1%281%29.mp4", "size": 12345}}},
            {"s3": {"bucket": {"name": "soccer-uploads"}, "object": {}}},
        ]
    }

    videos = parse_s3_event(event)

    assert videos == [VideoRef(bucket="soccer-uploads", key="uploads/match 1(1).mp4", size_bytes=12345, name="match 1(1).mp4")]


def test_parse_s3_event_without_records():
    assert parse_s3_event({}) == []


@pytest.mark.parametrize("key, size", [
    ("clip.mp4", 10),
    ("clip.MOV", None),
    ("raw/capture.avi", 0),
    ("raw/capture", 100_001),
])
def test_accepts_videos(key, size):
    validate_upload(VideoRef(bucket="b", key=key, size_bytes=size))


@pytest.mark.parametrize("key, size", [
    ("notes.txt", 10),
    ("raw/capture", 100_000),
    ("raw/capture", None),
])
def test_rejects_non_videos(key, size):
    with pytest.raises(SubmissionError, match="is not a valid video file"):
        validate_upload(VideoRef(bucket="b", key=key, size_bytes=size))
