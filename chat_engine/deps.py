from fastapi import Request

from .provider.google_sdk import GoogleGenAITransport
from .provider.key_pool import KeyHealthPool
from .redis_client import get_redis_client
from .services.chat_service import ChatService
from .settings import settings
from .storage.session_store import SessionStore
from .storage.substrate import FileStorage, RedisStorage, StorageSubstrate


def build_storage() -> StorageSubstrate:
    backend = settings.storage_backend.strip().lower()
    if backend == "redis":
        return RedisStorage(get_redis_client())
    if backend == "file":
        return FileStorage(settings.storage_dir)
    raise ValueError(f"Unsupported STORAGE_BACKEND {settings.storage_backend!r}")


def build_chat_service() -> ChatService:
    """
    Wire the engine from environment settings.
    """
    pool = KeyHealthPool(
        settings.api_key_list(), cooldown_seconds=settings.key_cooldown_seconds
    )
    return ChatService(
        transport=GoogleGenAITransport(),
        store=SessionStore(build_storage(), key=settings.session_storage_key),
        key_pool=pool,
        default_credential=settings.gemini_api_key,
        storage_limit_bytes=settings.session_storage_limit_bytes,
        auto_title_with_model=settings.auto_title_with_model,
        title_model_id=settings.title_model_id,
    )


async def get_chat_service(request: Request) -> ChatService:
    """
    FastAPI dependency returning the service created at application startup.

    Tests may pass their own instance to create_app() or override this
    dependency.
    """
    return request.app.state.chat_service
