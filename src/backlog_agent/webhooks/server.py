"""FastAPI webhook listener."""

import json
import logging
from datetime import timedelta
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ..core.config import OrchestratorConfig
from ..core.models import Provider, SessionStatus, utcnow
from ..executors.router import ExecutorRouter
from ..sessions.manager import SessionManager
from ..utils.validators import validate_task_id
from .handlers import WebhookEventHandler
from .models import (
    HealthReport,
    SessionDeleted,
    SessionList,
    SessionSummary,
    StuckSessionsReset,
    WebhookAccepted,
)
from .signature import extract_webhook_headers, verify_signature

logger = logging.getLogger(__name__)

STUCK_SESSION_AGE = timedelta(hours=1)


def create_app(
    config: OrchestratorConfig,
    handler: WebhookEventHandler,
    sessions: SessionManager,
    router: Optional[ExecutorRouter] = None,
) -> FastAPI:
    """Create the webhook application."""
    app = FastAPI(
        title="backlog-agent webhooks",
        description="Receives task events from the tracker",
        version="1.0.0",
    )

    app.state.config = config
    app.state.handler = handler
    app.state.sessions = sessions
    app.state.router = router

    register_routes(app)
    return app


def register_routes(app: FastAPI):
    """Register all webhook routes."""

    @app.post("/webhook", response_model=WebhookAccepted)
    async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
        config: OrchestratorConfig = app.state.config
        secret = config.webhook.secret
        if not secret:
            logger.error("❌ Webhook secret not configured")
            return JSONResponse(status_code=500, content={"error": "Server not configured"})

        # Verify against the exact bytes received
        raw_body = await request.body()
        headers = extract_webhook_headers(request.headers)
        result = verify_signature(
            raw_body,
            headers.signature if headers else None,
            secret,
            headers.timestamp if headers else None,
            max_age_seconds=config.webhook.max_age_seconds,
        )
        if not result.valid:
            logger.error(f"❌ Webhook signature verification failed: {result.error}")
            return JSONResponse(status_code=401, content={"error": result.error})

        try:
            payload = json.loads(raw_body)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Body is not valid JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

        logger.info(f"📥 Received webhook: {headers.event}")
        background_tasks.add_task(app.state.handler.handle, headers.event, payload)
        return WebhookAccepted(event=headers.event)

    @app.get("/health", response_model=HealthReport)
    async def health():
        router: Optional[ExecutorRouter] = app.state.router
        providers = {}
        for provider in Provider:
            if router is None:
                providers[provider.value] = "unknown"
                continue
            available = await router.get(provider).check_available()
            providers[provider.value] = "available" if available else "not configured"

        sessions: SessionManager = app.state.sessions
        return HealthReport(
            status="healthy" if "available" in providers.values() else "degraded",
            providers=providers,
            active_sessions=len(sessions.get_active()),
            active_tasks=app.state.handler.worker.active_tasks(),
            timestamp=utcnow(),
        )

    @app.get("/sessions", response_model=SessionList)
    async def list_sessions():
        sessions = app.state.sessions.all()
        return SessionList(
            count=len(sessions),
            sessions=[
                SessionSummary(
                    id=s.id,
                    task_id=s.task_id,
                    title=s.title,
                    status=s.status,
                    provider=s.provider or Provider.CLAUDE.value,
                    provider_session_id=s.session_token,
                    message_count=s.message_count,
                    updated_at=s.updated_at,
                )
                for s in sessions
            ],
        )

    @app.delete("/sessions/{task_id}", response_model=SessionDeleted)
    async def delete_session(task_id: str):
        try:
            validate_task_id(task_id)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid task_id: {task_id}")

        sessions: SessionManager = app.state.sessions
        session = sessions.get_by_task_id(task_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")

        logger.info(f"🗑️ Manually deleting session for task {task_id} (was {session.status})")
        sessions.delete(task_id)
        return SessionDeleted(message=f"Session deleted for task {task_id}", previous_status=session.status)

    @app.post("/sessions/reset-stuck", response_model=StuckSessionsReset)
    async def reset_stuck_sessions():
        sessions: SessionManager = app.state.sessions
        cutoff = utcnow() - STUCK_SESSION_AGE
        stuck = []
        for session in sessions.all():
            if session.status == SessionStatus.RUNNING.value and session.updated_at < cutoff:
                logger.info(f"🔄 Marking stuck session as interrupted: {session.task_id}")
                sessions.update(session.task_id, status=SessionStatus.INTERRUPTED)
                stuck.append(session.task_id)
        return StuckSessionsReset(message=f"Reset {len(stuck)} stuck sessions", reset_task_ids=stuck)


def run_server(app: FastAPI, host: str = "0.0.0.0", port: int = 3001):
    """Run the webhook server (blocks)."""
    import uvicorn

    logger.info(f"🌐 Webhook server listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")
