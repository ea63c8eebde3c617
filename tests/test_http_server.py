import json

import pytest
from fastapi.testclient import TestClient

from analysis_worker.adapters.memory_adapter import InMemoryRecordStore
from analysis_worker.http_server import create_app
from analysis_worker.orchestrator import AnalysisOrchestrator
from analysis_worker.polling import PollPolicy

from factories import FakeProvider, TickingClock, face_detection, label_detection

VIDEO_ID = "uploads-match-1-mp4"

UPLOAD_EVENT = {
    "Records": [{
        "eventName": "ObjectCreated:Put",
        "s3": {"bucket": {"name": "soccer-uploads"}, "object": {"key": "uploads/match+1.mp4", "size": 4_000_000}},
    }]
}


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator, poll_policy=PollPolicy(interval_sec=0.01, max_wait_sec=0)))


def _sns(message, message_type="Notification"):
    envelope = {"Type": message_type, "MessageId": "m-1", "Message": json.dumps(message)}
    if message_type == "SubscriptionConfirmation":
        envelope["SubscribeURL"] = "https://sns.us-east-1.amazonaws.com/?Action=ConfirmSubscription"
    return json.dumps(envelope)


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "status": "healthy"}


def test_healthz_reports_store_failure():
    class BrokenStore(InMemoryRecordStore):
        def get(self, video_id):
            raise ConnectionError("table unavailable")

    client = TestClient(create_app(AnalysisOrchestrator(FakeProvider(), BrokenStore())))

    assert client.get("/healthz").status_code == 503


def test_upload_then_refresh_to_completion(client, provider):
    response = client.post("/uploads", json=UPLOAD_EVENT)

    assert response.status_code == 200
    assert response.json()["submitted"] == [{"videoId": VIDEO_ID, "status": "analyzing", "error": None}]

    provider.succeed(VIDEO_ID, "label", [label_detection(1000, "Goal", 97.0)])
    provider.succeed(VIDEO_ID, "face", [face_detection(1000)])
    provider.succeed(VIDEO_ID, "moderation", [])

    refreshed = client.post(f"/analysis/{VIDEO_ID}/refresh").json()

    assert refreshed["outcome"] == "ready_to_finalize"
    record = refreshed["record"]
    assert record["status"] == "completed"
    assert record["results"]["keyMoments"][0]["description"] == "Goal detected"
    assert record["jobs"]["label"]["status"] == "succeeded"

    fetched = client.get(f"/analysis/{VIDEO_ID}").json()
    assert fetched["results"] == record["results"]


def test_upload_event_without_records(client):
    assert client.post("/uploads", json={"Records": []}).status_code == 400


def test_unknown_video_is_404(client):
    response = client.get("/analysis/missing")

    assert response.status_code == 404
    assert response.json()["detail"] == "Video analysis not found: missing"
    assert client.post("/analysis/missing/refresh").status_code == 404


def test_list_analyses(client):
    client.post("/uploads", json=UPLOAD_EVENT)

    body = client.get("/analysis").json()

    assert body["count"] == 1
    assert body["records"][0]["video_id"] == VIDEO_ID


def test_sns_notification_is_applied(client):
    client.post("/uploads", json=UPLOAD_EVENT)
    message = {"JobId": f"{VIDEO_ID}-label", "Status": "FAILED", "API": "StartLabelDetection",
               "JobTag": VIDEO_ID, "StatusMessage": "Unsupported codec"}

    response = client.post("/notifications", content=_sns(message), headers={"Content-Type": "text/plain; charset=UTF-8"})

    assert response.status_code == 200
    assert response.json() == {"status": "received", "applied": True, "outcome": "still_pending"}
    assert client.get(f"/analysis/{VIDEO_ID}").json()["jobs"]["label"]["message"] == "Unsupported codec"


def test_subscription_confirmation(client):
    response = client.post("/notifications", content=_sns({}, message_type="SubscriptionConfirmation"))

    assert response.json() == {"status": "confirmation_required"}


def test_malformed_notifications_are_rejected(client):
    assert client.post("/notifications", content="{broken").status_code == 400
    bad_api = {"JobId": "j", "Status": "SUCCEEDED", "API": "StartTextDetection", "JobTag": VIDEO_ID}
    assert client.post("/notifications", content=_sns(bad_api)).status_code == 400


def test_wait_times_out_while_jobs_run(client):
    client.post("/uploads", json=UPLOAD_EVENT)

    body = client.post(f"/analysis/{VIDEO_ID}/wait").json()

    assert body["outcome"] == "timed_out"
    assert body["record"]["status"] == "analyzing"


def test_stats(client):
    client.post("/uploads", json=UPLOAD_EVENT)

    assert client.get("/stats").json()["records_submitted"] == 1


def test_stats_provider_overrides_orchestrator_stats(store, provider):
    orchestrator = AnalysisOrchestrator(provider, store, clock=TickingClock())
    client = TestClient(create_app(orchestrator, stats_provider=lambda: {"running": True}))

    assert client.get("/stats").json() == {"running": True}


def test_non_video_upload_is_recorded_as_failed(client):
    event = {"Records": [{"s3": {"bucket": {"name": "soccer-uploads"}, "object": {"key": "notes.txt", "size": 120}}}]}

    response = client.post("/uploads", json=event)

    assert response.status_code == 200
    assert response.json()["submitted"] == [{
        "videoId": "notes-txt", "status": "failed", "error": "File notes.txt is not a valid video file",
    }]


def test_notifications_require_token_when_configured(orchestrator):
    client = TestClient(create_app(orchestrator, notification_token="s3cret"))
    client.post("/uploads", json=UPLOAD_EVENT)
    message = {"JobId": f"{VIDEO_ID}-label", "Status": "FAILED", "API": "StartLabelDetection", "JobTag": VIDEO_ID}

    assert client.post("/notifications", content=_sns(message)).status_code == 403
    assert client.post("/notifications?token=wrong", content=_sns(message)).status_code == 403
    assert client.get(f"/analysis/{VIDEO_ID}").json()["jobs"]["label"]["status"] == "pending"

    response = client.post("/notifications?token=s3cret", content=_sns(message))
    assert response.status_code == 200
    assert response.json()["applied"] is True

    headers = {"X-Notification-Token": "s3cret"}
    assert client.post("/notifications", content=_sns(message), headers=headers).json()["applied"] is False


def test_refresh_survives_store_errors(provider):
    class ThrottledStore(InMemoryRecordStore):
        def save_ticket(self, video_id, ticket):
            if ticket.status == "succeeded":
                raise ConnectionError("throttled")
            return super().save_ticket(video_id, ticket)

    client = TestClient(create_app(AnalysisOrchestrator(provider, ThrottledStore(), clock=TickingClock())))
    client.post("/uploads", json=UPLOAD_EVENT)
    provider.succeed(VIDEO_ID, "label", [label_detection(1000, "Goal", 97.0)])

    response = client.post(f"/analysis/{VIDEO_ID}/refresh")

    assert response.status_code == 200
    assert response.json()["outcome"] == "still_pending"
