from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from agent.agent import ConversationGateway, GeminiGateway
from agent.chat import ChatService
from agent.core.exceptions import GatewayError, GatewayTimeout, SessionExists, SessionNotFound
from agent.core.memory import SessionRegistry, utcnow
from agent.core.sweeper import EvictionSweeper
from app.models import ChatMessageRequest, CleanupRequest, CreateSessionRequest
from config.settings import Settings, get_settings


LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(message)s"

logger = logging.getLogger("chatsession")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _timestamp() -> str:
    return utcnow().isoformat()


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "error": message}
    body.update(extra)
    body["timestamp"] = _timestamp()
    return JSONResponse(status_code=status_code, content=body)


API_PREFIX = "/api/"


class ApiRateLimitMiddleware(SlowAPIMiddleware):
    """Applies the default rate limit to API routes only."""

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(API_PREFIX):
            return await call_next(request)
        return await super().dispatch(request, call_next)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SessionNotFound)
    async def _session_not_found(request: Request, exc: SessionNotFound):
        return _error(404, "Session not found", sessionId=exc.session_id)

    @app.exception_handler(SessionExists)
    async def _session_exists(request: Request, exc: SessionExists):
        return _error(409, "Session already exists", sessionId=exc.session_id)

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError):
        status_code = 504 if isinstance(exc, GatewayTimeout) else 502
        return _error(status_code, "Failed to generate a response. Please try again.")

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return _error(400, details or "Invalid request")

    @app.exception_handler(RateLimitExceeded)
    def _rate_limited(request: Request, exc: RateLimitExceeded):
        return _error(429, "Too many requests from this IP")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(
                404,
                "Endpoint not found",
                path=request.url.path,
                method=request.method,
            )
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error")


def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[SessionRegistry] = None,
    gateway: Optional[ConversationGateway] = None,
) -> FastAPI:
    """Build the API around one registry and one gateway.

    Without an explicit gateway the Gemini gateway is built from settings,
    which fails with ``ConfigurationError`` when no API key is configured.
    """
    settings = settings or get_settings()
    if gateway is None:
        gateway = GeminiGateway.from_settings(settings)
    if registry is None:
        registry = SessionRegistry(provider_state_factory=gateway.new_state)

    service = ChatService(
        registry,
        gateway,
        timeout=settings.gateway_timeout_seconds,
        default_max_age=settings.session_max_age,
        model_name=settings.gemini_model,
        system_instruction=settings.system_instruction,
        generation_config=settings.generation_config(),
    )
    sweeper = EvictionSweeper(
        registry, max_age=settings.session_max_age, interval=settings.sweep_interval
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Config: env=%s model=%s key_set=%s max_age=%s sweep=%s",
            settings.app_env,
            settings.gemini_model,
            bool(settings.gemini_api_key),
            settings.session_max_age,
            settings.sweep_interval if settings.sweep_enabled else "disabled",
        )
        if settings.sweep_enabled:
            sweeper.start()
        try:
            yield
        finally:
            sweeper.stop()
            service.close()
            logger.info("Chat API shutdown")

    app = FastAPI(title="Chat Session API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.chat_service = service
    app.state.sweeper = sweeper

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit],
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_middleware(ApiRateLimitMiddleware)

    # CORS: allow local frontend during development
    if settings.is_development:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    _register_error_handlers(app)

    @app.get("/health")
    @limiter.exempt
    def health() -> Dict[str, Any]:
        return {"status": "healthy", "timestamp": _timestamp(), "sessions": len(registry)}

    @app.post("/api/chat/session", status_code=201)
    def create_session(req: Optional[CreateSessionRequest] = None) -> Dict[str, Any]:
        session = service.create_session(req.session_id if req else None)
        return {
            "success": True,
            "sessionId": session.id,
            "createdAt": session.created_at.isoformat(),
        }

    @app.post("/api/chat/message")
    def send_message(req: ChatMessageRequest) -> Dict[str, Any]:
        logger.info(
            "Incoming message: session=%s message_len=%s", req.session_id, len(req.message)
        )
        result = service.send_message(req.session_id, req.message)
        return {
            "success": True,
            "response": result.response,
            "exchangeId": result.exchange_id,
            "sessionId": result.session_id,
            "timestamp": _timestamp(),
        }

    @app.get("/api/chat/session/{session_id}/history")
    def session_history(session_id: str) -> Dict[str, Any]:
        session = service.history(session_id)
        return {
            "success": True,
            "sessionId": session.id,
            "createdAt": session.created_at.isoformat(),
            "lastActivityAt": session.last_activity_at.isoformat(),
            "messageCount": session.message_count,
            "history": [exchange.to_dict() for exchange in session.history],
        }

    @app.delete("/api/chat/session/{session_id}")
    def delete_session(session_id: str) -> Dict[str, Any]:
        deleted_at = service.delete_session(session_id)
        return {"success": True, "sessionId": session_id, "deletedAt": deleted_at.isoformat()}

    @app.put("/api/chat/session/{session_id}/clear")
    def clear_session(session_id: str) -> Dict[str, Any]:
        cleared_at = service.clear_session(session_id)
        return {"success": True, "sessionId": session_id, "clearedAt": cleared_at.isoformat()}

    @app.get("/api/chat/sessions")
    def list_sessions() -> Dict[str, Any]:
        sessions = [summary.to_dict() for summary in service.list_sessions()]
        return {
            "success": True,
            "sessions": sessions,
            "count": len(sessions),
            "timestamp": _timestamp(),
        }

    @app.post("/api/chat/cleanup")
    def cleanup(req: Optional[CleanupRequest] = None) -> Dict[str, Any]:
        max_age = None
        if req is not None and req.max_age_ms is not None:
            max_age = timedelta(milliseconds=req.max_age_ms)
        result = service.cleanup(max_age)
        return {
            "success": True,
            "cleaned": result.evicted,
            "remaining": result.remaining,
            "timestamp": _timestamp(),
        }

    @app.get("/api/info")
    def info() -> Dict[str, Any]:
        return {
            "success": True,
            **service.info().to_dict(),
            "timestamp": _timestamp(),
        }

    return app
