from typing import Optional

from fastapi import Depends, FastAPI, Request
from pydantic import BaseModel

from .api.conversation_routes import router as conversation_router
from .api.key_routes import router as key_router
from .deps import build_chat_service, get_chat_service
from .logging_config import logger
from .redis_client import close_redis_client
from .services.chat_service import ChatService


class HealthResponse(BaseModel):
    status: str = "ok"
    conversations: int = 0
    keys: int = 0


def create_app(chat_service: Optional[ChatService] = None) -> FastAPI:
    app = FastAPI(title="Chat Engine", version="0.1.0")
    app.state.chat_service = chat_service
    # Conversation CRUD and streaming turns.
    app.include_router(conversation_router)
    # API key pool management.
    app.include_router(key_router)

    @app.on_event("startup")
    async def _load_conversations() -> None:
        if app.state.chat_service is None:
            app.state.chat_service = build_chat_service()
        await app.state.chat_service.load()

    @app.on_event("shutdown")
    async def _close_connections() -> None:
        await close_redis_client()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Basic request/response logging middleware.
        """
        client_host = request.client.host if request.client else "-"
        logger.info("HTTP %s %s from %s", request.method, request.url.path, client_host)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled error while processing %s %s",
                request.method,
                request.url.path,
            )
            raise
        logger.info(
            "HTTP %s %s -> %s", request.method, request.url.path, response.status_code
        )
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health(service: ChatService = Depends(get_chat_service)) -> HealthResponse:
        return HealthResponse(
            conversations=len(service.list_conversations()),
            keys=len(service.key_pool),
        )

    return app


__all__ = ["create_app"]
