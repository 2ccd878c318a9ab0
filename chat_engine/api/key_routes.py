from __future__ import annotations

from fastapi import APIRouter, Depends

from chat_engine.deps import get_chat_service
from chat_engine.sanitizer import mask_credential
from chat_engine.schemas import ApiKeysResponse, ApiKeysUpdateRequest, KeyHealthResponse
from chat_engine.services.chat_service import ChatService

router = APIRouter(tags=["keys"], prefix="/keys")


def _pool_response(service: ChatService) -> ApiKeysResponse:
    records = service.key_pool.snapshot()
    return ApiKeysResponse(
        count=len(records),
        keys=[
            KeyHealthResponse(
                key=mask_credential(record.key),
                error_count=record.error_count,
                last_error_at=record.last_error_at,
            )
            for record in records
        ],
    )


@router.get("", response_model=ApiKeysResponse)
async def get_key_pool_endpoint(
    service: ChatService = Depends(get_chat_service),
) -> ApiKeysResponse:
    return _pool_response(service)


@router.put("", response_model=ApiKeysResponse)
async def replace_key_pool_endpoint(
    payload: ApiKeysUpdateRequest,
    service: ChatService = Depends(get_chat_service),
) -> ApiKeysResponse:
    """
    Replace the key pool; every key starts with a clean error history.
    """
    service.set_api_keys(payload.keys)
    return _pool_response(service)
