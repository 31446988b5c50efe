import logging
import re
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from kami.api.schemas import ChatResponse, ClearRequest, ClearResponse, HistoryResponse, ProfileResponse
from kami.core import runtime
from kami.core.chat import now_iso
from kami.core.errors import (
    InvalidCompletionRequestError,
    PoolExhaustedError,
    RequestTooLargeError,
    StoreUnavailableError,
)
from kami.core.metrics import metrics
from kami.core.settings import SETTINGS

router = APIRouter()
logger = logging.getLogger(__name__)

RATE_LIMITED_MESSAGE = "⚠️ Tất cả API keys đang vượt giới hạn. Vui lòng thử lại sau 1 phút."
TOO_LARGE_MESSAGE = "❌ Tin nhắn quá lớn. Hãy rút ngắn tin nhắn."
STORE_DOWN_MESSAGE = "❌ Lỗi kết nối cơ sở dữ liệu. Vui lòng thử lại sau."
INTERNAL_MESSAGE = "❌ Đã xảy ra lỗi nội bộ. Vui lòng thử lại sau."
_CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9_\-:.]{1,128}$")


@router.get("/health")
def health():
    return {"status": "ok", "message": "API hoạt động", "time": now_iso()}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.post("/api/chat", response_model=ChatResponse)
async def chat(request: Request):
    try:
        body = await request.json()
    except Exception:
        return _error_response("invalid_request", "Request body must be a valid JSON object.")
    if not isinstance(body, dict):
        return _error_response("invalid_request", "Request body must be a JSON object.")

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return _error_response("invalid_message", "Message is required and must be a string.")
    if len(message) > SETTINGS.max_message_chars:
        return _error_response(
            "message_too_long",
            f"Message too long (max {SETTINGS.max_message_chars} characters).",
        )

    raw_user = body.get("userId")
    if raw_user is None or raw_user == "":
        user_id = SETTINGS.default_user_id
    elif _is_valid_user_id(raw_user):
        user_id = raw_user.strip()
    else:
        return _error_response("invalid_user_id", "Invalid userId format.")

    conversation_id = _resolve_conversation_id(body.get("conversationId"))
    if conversation_id is None:
        return _error_response("invalid_conversation_id", "Invalid conversationId format.")

    try:
        result = await runtime.get_orchestrator().handle(message, user_id, conversation_id)
    except PoolExhaustedError as exc:
        logger.warning("chat failed, credential pool exhausted: %s", exc)
        return _error_response("rate_limited", RATE_LIMITED_MESSAGE, status_code=429)
    except RequestTooLargeError:
        return _error_response("request_too_large", TOO_LARGE_MESSAGE, status_code=413)
    except InvalidCompletionRequestError as exc:
        return _error_response("invalid_completion_request", f"❌ Request không hợp lệ: {exc}")
    except StoreUnavailableError:
        return _error_response("store_unavailable", STORE_DOWN_MESSAGE, status_code=503)
    except Exception:
        logger.exception("chat handler failed user_id=%s message=%r", user_id, message[:120])
        return _error_response("internal_error", INTERNAL_MESSAGE, status_code=500)
    return ChatResponse.model_validate(result.to_payload())


@router.get("/api/history", response_model=HistoryResponse)
async def history(request: Request):
    user_id, conversation_id, error = _read_identity(request.query_params.get("userId"), request.query_params.get("conversationId"))
    if error is not None:
        return error
    try:
        data = await runtime.get_orchestrator().history(user_id, conversation_id)
    except Exception:
        logger.exception("history read failed user_id=%s", user_id)
        return _error_response("internal_error", INTERNAL_MESSAGE, status_code=500)
    return HistoryResponse.model_validate(data)


@router.get("/api/memory", response_model=ProfileResponse)
async def memory(request: Request):
    user_id, conversation_id, error = _read_identity(request.query_params.get("userId"), request.query_params.get("conversationId"))
    if error is not None:
        return error
    try:
        data = await runtime.get_orchestrator().profile(user_id, conversation_id)
    except Exception:
        logger.exception("profile read failed user_id=%s", user_id)
        return _error_response("internal_error", INTERNAL_MESSAGE, status_code=500)
    return ProfileResponse.model_validate(data)


@router.delete("/api/clear", response_model=ClearResponse)
async def clear(request: Request):
    try:
        body = await request.json()
    except Exception:
        return _error_response("invalid_request", "Request body must be a valid JSON object.")
    if not isinstance(body, dict):
        return _error_response("invalid_request", "Request body must be a JSON object.")
    try:
        payload = ClearRequest.model_validate(body)
    except ValidationError:
        return _error_response("invalid_request", "userId and conversationId must be strings.")

    user_id, conversation_id, error = _read_identity(payload.user_id, payload.conversation_id)
    if error is not None:
        return error
    try:
        data = await runtime.get_orchestrator().clear(user_id, conversation_id)
    except StoreUnavailableError:
        return _error_response("store_unavailable", STORE_DOWN_MESSAGE, status_code=503)
    except Exception:
        logger.exception("clear failed user_id=%s conversation_id=%s", user_id, conversation_id)
        return _error_response("internal_error", INTERNAL_MESSAGE, status_code=500)
    return ClearResponse(message="Đã xóa dữ liệu thành công", **data)


def _is_valid_user_id(raw: Any) -> bool:
    if not isinstance(raw, str):
        return False
    return re.fullmatch(SETTINGS.user_id_pattern, raw.strip()) is not None


def _resolve_conversation_id(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return SETTINGS.default_conversation_id
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if not _CONVERSATION_ID_RE.fullmatch(value):
        return None
    return value


def _read_identity(raw_user: Any, raw_conversation: Any) -> tuple[str, str, Optional[JSONResponse]]:
    if raw_user is None or raw_user == "":
        return "", "", _error_response("missing_user_id", "userId is required.")
    if not _is_valid_user_id(raw_user):
        return "", "", _error_response("invalid_user_id", "Invalid userId format.")
    conversation_id = _resolve_conversation_id(raw_conversation)
    if conversation_id is None:
        return "", "", _error_response("invalid_conversation_id", "Invalid conversationId format.")
    return raw_user.strip(), conversation_id, None


def _error_response(code: str, message: str, status_code: int = 400) -> JSONResponse:
    payload = {"success": False, "error": message, "code": code, "timestamp": now_iso()}
    return JSONResponse(status_code=status_code, content=payload)
