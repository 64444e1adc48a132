from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

DataT = TypeVar("DataT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorBody(BaseModel):
    # Quota rejections put action/limit/tier into details for upgrade prompts.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware assigns ids; handlers running outside it mint one lazily.
    if not getattr(request.state, "request_id", None):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    return request.state.request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details or None)
    return {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}
