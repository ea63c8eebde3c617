"""
HTTP status and query surface.

Serves record lookups and refreshes, accepts upload events and SNS job
completion pushes, and exposes health and statistics for the worker.
"""

import hmac
import json
import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional
from threading import Thread

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .errors import NotFound
from .models import AnalysisRecord
from .notifications import is_sns_envelope, parse_job_message, parse_sns_envelope
from .orchestrator import AnalysisOrchestrator
from .polling import PollPolicy, wait_for_report
from .uploads import parse_s3_event

logger = logging.getLogger("analysis_worker")

# Never stored; reading it exercises the store round trip
HEALTHCHECK_VIDEO_ID = "__healthcheck__"


def record_view(record: AnalysisRecord) -> Dict[str, Any]:
    """Client view of a record; completed records carry their cached report"""
    view = {
        "videoId": record.video_id,
        "status": record.status,
        "createdAt": record.created_at,
        "completedAt": record.completed_at,
        "videoKey": record.video_key,
        "jobs": {
            kind: {"jobId": ticket.job_id, "status": ticket.status, "message": ticket.message}
            for kind, ticket in record.tickets.items()
        },
    }
    if record.report is not None:
        view["results"] = json.loads(record.report)
    if record.error is not None:
        view["error"] = record.error
    return view


def create_app(orchestrator: AnalysisOrchestrator, poll_policy: Optional[PollPolicy] = None,
               stats_provider: Optional[Callable[[], Dict[str, Any]]] = None,
               notification_token: Optional[str] = None) -> FastAPI:
    """
    Build the FastAPI application around an orchestrator.

    When notification_token is set, /notifications only accepts pushes
    carrying it as the ``token`` query parameter or the
    ``X-Notification-Token`` header.
    """
    app = FastAPI(title="Soccer Analysis Worker API")
    policy = poll_policy or PollPolicy()

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/healthz")
    def health_check():
        """Health check endpoint"""
        try:
            orchestrator.store.get(HEALTHCHECK_VIDEO_ID)
            return {"ok": True, "status": "healthy"}
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            raise HTTPException(status_code=503, detail=f"Record store unavailable: {str(e)}")

    @app.get("/stats")
    def get_stats():
        """Get worker statistics"""
        if stats_provider is not None:
            return stats_provider()
        return orchestrator.get_stats()

    @app.get("/analysis")
    def list_analyses():
        """List analysis records, newest first"""
        summaries = orchestrator.list_records()
        return {
            "count": len(summaries),
            "records": [asdict(summary) for summary in summaries],
        }

    @app.get("/analysis/{video_id}")
    def get_analysis(video_id: str):
        """Get a record; read-only"""
        return record_view(orchestrator.get(video_id))

    @app.post("/analysis/{video_id}/refresh")
    def refresh_analysis(video_id: str):
        """Check job statuses and finalize the record when possible"""
        outcome = orchestrator.refresh(video_id)
        return {"outcome": outcome.outcome, "record": record_view(outcome.record)}

    @app.post("/analysis/{video_id}/wait")
    def wait_for_analysis(video_id: str):
        """Refresh until the record is terminal or the poll budget runs out"""
        result = wait_for_report(orchestrator, video_id, policy)
        return {"outcome": result.outcome, "record": record_view(result.record)}

    @app.post("/uploads")
    def receive_upload(event: Dict[str, Any]):
        """Start analysis for every video in an S3 object-created event"""
        videos = parse_s3_event(event)
        if not videos:
            raise HTTPException(status_code=400, detail="No S3 object records in event")

        submitted = []
        for video in videos:
            # Rejected uploads come back as failed records, not as errors
            record = orchestrator.submit_jobs(video)
            submitted.append({"videoId": record.video_id, "status": record.status, "error": record.error})
        return {"submitted": submitted}

    @app.post("/notifications")
    async def receive_notification(request: Request):
        """
        Receive a Rekognition completion message pushed by SNS.

        SNS posts with a text/plain content type, so the body is decoded
        here rather than by FastAPI.
        """
        if notification_token is not None:
            supplied = request.query_params.get("token") or request.headers.get("X-Notification-Token") or ""
            if not hmac.compare_digest(supplied.encode("utf-8"), notification_token.encode("utf-8")):
                logger.warning("Rejected notification with a missing or invalid token")
                raise HTTPException(status_code=403, detail="Invalid notification token")

        try:
            data = json.loads(await request.body())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid JSON body: {e}")

        try:
            if is_sns_envelope(data):
                if data.get("Type") == "SubscriptionConfirmation":
                    logger.warning(f"SNS subscription confirmation required: {data.get('SubscribeURL')}")
                    return {"status": "confirmation_required"}
                notification = parse_sns_envelope(data)
                if notification is None:
                    return {"status": "ignored"}
            else:
                notification = parse_job_message(data)
        except ValueError as e:
            logger.error(f"Rejected notification: {e}")
            raise HTTPException(status_code=400, detail=str(e))

        applied = await run_in_threadpool(orchestrator.apply_notification, notification)
        outcome = None
        if applied:
            outcome = (await run_in_threadpool(orchestrator.refresh, notification.video_id)).outcome
        return {"status": "received", "applied": applied, "outcome": outcome}

    return app


class HealthServer:
    def __init__(self, app: FastAPI, port: int = 8000):
        self.app = app
        self.port = port
        self.server_thread = None
        self.running = False

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        def run_server():
            try:
                uvicorn.run(
                    self.app,
                    host="0.0.0.0",
                    port=self.port,
                    log_level="warning",  # Reduce uvicorn logging
                    access_log=False
                )
            except Exception as e:
                logger.error(f"HTTP server error: {str(e)}")

        self.server_thread = Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

        logger.info(f"HTTP server started on port {self.port}")

    def stop(self):
        """Stop the HTTP server"""
        self.running = False
        logger.info("HTTP server stopped")
