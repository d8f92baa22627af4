"""
HTTP 路由
Claude Messages 兼容端点：/v1/messages、/v1/messages/count_tokens；
调用方配置 /v1/config，以及 /health
"""
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from gemini_relay.core.api_keys import ApiKeyStore
from gemini_relay.core.user_config import UserConfigService
from gemini_relay.utils.exceptions import AuthenticationError, InvalidRequestError, RelayError
from gemini_relay.utils.logger import setup_logger
from gemini_relay.utils.security import mask_api_key
from .relay_service import GeminiDirectRelayService

logger = setup_logger("routes")

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_relay_service(request: Request) -> GeminiDirectRelayService:
    return request.app.state.relay_service


def get_api_key_store(request: Request) -> ApiKeyStore:
    return request.app.state.api_key_store


def extract_anthropic_api_key(
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    authorization: Optional[str] = Header(None),
) -> str:
    """x-api-key 优先，其次 Authorization: Bearer"""
    if x_api_key:
        logger.debug(f"Extracted API key from x-api-key: {mask_api_key(x_api_key)}")
        return x_api_key
    if authorization and authorization.lower().startswith("bearer "):
        api_key = authorization[7:].strip()
        logger.debug(f"Extracted API key from Authorization header: {mask_api_key(api_key)}")
        return api_key
    logger.error("Missing authentication: neither x-api-key nor valid Authorization header found")
    raise AuthenticationError("Missing API key")


async def authenticate(
    raw_key: str = Depends(extract_anthropic_api_key),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> Dict[str, Any]:
    return await store.validate(raw_key)


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """所有 relay 错误都以 Claude 错误信封返回"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def _validate_messages_request(body: Dict[str, Any]) -> None:
    model = body.get("model")
    if not isinstance(model, str) or not model:
        raise InvalidRequestError("model: Field required")
    if body.get("max_tokens") is None:
        raise InvalidRequestError("max_tokens: Field required")
    if not isinstance(body.get("messages"), list):
        raise InvalidRequestError("messages: Field required")


@router.post("/v1/messages")
async def create_message(
    request: Request,
    api_key: Dict[str, Any] = Depends(authenticate),
    relay: GeminiDirectRelayService = Depends(get_relay_service),
):
    """Claude Messages 端点，stream=true 时返回 SSE"""
    body = await _read_body(request)
    _validate_messages_request(body)

    if body.get("stream"):
        frames = await relay.open_message_stream(body, api_key)
        return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)

    return JSONResponse(content=await relay.relay_messages(body, api_key))


@router.post("/v1/messages/count_tokens")
async def count_tokens(
    request: Request,
    api_key: Dict[str, Any] = Depends(authenticate),
    relay: GeminiDirectRelayService = Depends(get_relay_service),
):
    """本地估算输入 token 数（tiktoken cl100k_base 近似）"""
    body = await _read_body(request)
    return {"input_tokens": relay.count_tokens(body)}


@router.get("/health")
async def health(request: Request):
    redis_ok = await request.app.state.redis.ping()
    return {"status": "ok", "redis": redis_ok}


# ===================== 调用方配置 =====================

class SystemPromptUpdate(BaseModel):
    prompt: str = ""
    position: Literal["prepend", "append"] = "append"


class UserConfigUpdate(BaseModel):
    """只更新请求里出现的字段"""
    modelMapping: Optional[Dict[str, str]] = None
    systemPrompt: Optional[SystemPromptUpdate] = None


def get_user_config_service(relay: GeminiDirectRelayService = Depends(get_relay_service)) -> UserConfigService:
    return relay.user_config


def _require_user_id(api_key: Dict[str, Any]) -> str:
    user_id = api_key.get("userId")
    if not user_id:
        raise InvalidRequestError("This API key is not bound to a user")
    return str(user_id)


async def _dump_user_config(service: UserConfigService, user_id: str) -> Dict[str, Any]:
    return {
        "modelMapping": await service.get_model_mapping(user_id),
        "systemPrompt": (await service.get_system_prompt(user_id)).model_dump(),
    }


@router.get("/v1/config")
async def get_user_config(
    api_key: Dict[str, Any] = Depends(authenticate),
    service: UserConfigService = Depends(get_user_config_service),
):
    return await _dump_user_config(service, _require_user_id(api_key))


@router.put("/v1/config")
async def update_user_config(
    update: UserConfigUpdate,
    api_key: Dict[str, Any] = Depends(authenticate),
    service: UserConfigService = Depends(get_user_config_service),
):
    user_id = _require_user_id(api_key)
    if update.modelMapping is not None:
        await service.set_model_mapping(user_id, update.modelMapping)
    if update.systemPrompt is not None:
        await service.set_system_prompt(user_id, update.systemPrompt.prompt, update.systemPrompt.position)
    logger.info(f"Updated relay config for user {user_id}")
    return await _dump_user_config(service, user_id)
