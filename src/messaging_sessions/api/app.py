"""
Session HTTP API

FastAPI app in front of the SessionManager.

Responsibilities:
- Start, inspect and disconnect tenant sessions
- Send messages through open sessions
- Receive Evolution API callbacks and route them to the tenant's client
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from messaging_sessions import __version__
from messaging_sessions.contracts.payloads import DisconnectRequest, SendMessageRequest, StartSessionRequest
from messaging_sessions.errors import InvalidTenantId, NotConnected, SendFailed, SessionError
from messaging_sessions.logging import setup_logging
from messaging_sessions.providers.evolution.webhook import validate_api_key
from messaging_sessions.service.manager import SessionManager
from messaging_sessions.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidTenantId: 400,
    NotConnected: 409,
    SendFailed: 502,
}


def get_manager(request: Request) -> SessionManager:
    return request.app.state.manager


def create_app(manager: SessionManager | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the API.

    Args:
        manager: Session manager to serve (built from settings at startup if omitted)
        settings: Settings override
    """
    settings = settings or get_settings()
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.manager is None:
            app.state.manager = SessionManager.from_settings(settings)
        logger.info(f"{settings.APP_NAME} started")
        try:
            yield
        finally:
            await app.state.manager.shutdown()
            logger.info(f"{settings.APP_NAME} stopped")

    app = FastAPI(
        title="Messaging Sessions",
        description="Multi-tenant chat session and delivery manager",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.settings = settings

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            500,
        )
        if status_code >= 500:
            logger.error(f"Request failed: {exc}", extra={"tenant_id": exc.tenant_id, "path": request.url.path})
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": str(exc), "code": exc.code},
        )

    @app.get("/health")
    async def health(manager: SessionManager = Depends(get_manager)) -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": settings.APP_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **manager.stats(),
        }

    @app.post("/auth/start")
    async def start_session(
        body: StartSessionRequest,
        manager: SessionManager = Depends(get_manager),
    ) -> dict[str, Any]:
        """Start pairing; the scan code arrives via notification or GET /status."""
        result = await manager.start_session(body.tenant_id)
        if result.already_connected:
            return {
                "success": True,
                "status": result.status,
                "message": "WhatsApp already connected",
                "phone": result.phone,
            }
        return {"success": True, "status": result.status, "message": "Initializing WhatsApp connection..."}

    @app.post("/auth/disconnect")
    async def disconnect(
        body: DisconnectRequest,
        manager: SessionManager = Depends(get_manager),
    ) -> dict[str, Any]:
        result = await manager.disconnect(body.tenant_id)
        return {
            "success": True,
            "message": "Disconnected successfully",
            "loggedOut": result.logged_out,
        }

    @app.post("/send-message")
    async def send_message(
        body: SendMessageRequest,
        manager: SessionManager = Depends(get_manager),
    ) -> dict[str, Any]:
        result = await manager.send(
            body.tenant_id,
            body.to,
            body.message,
            wait_for_delivery=body.options.wait_for_delivery,
            timeout=body.options.timeout,
        )
        response: dict[str, Any] = {
            "success": True,
            "messageId": result.message_id,
            "to": result.recipient_id,
            "timestamp": int(result.timestamp.timestamp()),
            "status": result.status.value,
        }
        if result.waited:
            response["confirmed"] = result.confirmed
        if body.message_id:
            response["reference"] = body.message_id
        return response

    @app.get("/status/{merchant_id}")
    async def status(merchant_id: str, manager: SessionManager = Depends(get_manager)) -> dict[str, Any]:
        return manager.status(merchant_id)

    @app.post("/webhook/evolution")
    async def evolution_webhook(
        request: Request,
        manager: SessionManager = Depends(get_manager),
    ) -> dict[str, Any]:
        """
        Receive socket events from Evolution API.

        Returns 200 for anything we cannot route so the bridge does not retry.
        """
        if settings.EVOLUTION_API_KEY and not validate_api_key(dict(request.headers), settings.EVOLUTION_API_KEY):
            logger.warning("Invalid Evolution API key")
            raise HTTPException(status_code=403, detail="Invalid API key")

        body = await request.body()
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON payload")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")

        events = await manager.handle_provider_webhook(payload)
        return {"status": "accepted" if events else "ignored", "events": events}

    return app
