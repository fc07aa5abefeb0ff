# src/docqa_search/backend/api/errors.py

"""
[职责] API 错误映射：将异常统一转换为 ErrorResponse 与 HTTP status，并注册 FastAPI 异常处理器。
[边界] 不负责 trace/request 注入（由 middleware 负责）；未知异常降级为 internal_error 并记录 ERROR 日志。
[上游关系] routers 抛出 DomainError 或未捕获异常。
[下游关系] 返回 ErrorResponse 供调用方消费。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from docqa_search.backend.api.schemas_http._common import ErrorResponse
from docqa_search.backend.schemas.ids import new_uuid
from docqa_search.backend.utils.errors import DomainError, to_http_error
from docqa_search.backend.utils.logging_ import get_logger, log_event

TRACE_HEADER = "x-trace-id"  # docstring: trace header 约定
REQUEST_HEADER = "x-request-id"  # docstring: request header 约定

logger = get_logger("api.errors")


def _ensure_trace_id(trace_id: Optional[str]) -> str:
    raw = str(trace_id or "").strip()
    if raw:
        return raw
    return str(new_uuid())  # docstring: 无 trace_id 时生成兜底


def to_error_response(error: BaseException, *, trace_id: Optional[str] = None) -> Tuple[int, ErrorResponse]:
    """
    [职责] 将异常转换为 (status_code, ErrorResponse)。
    [边界] 不写 header；不记录日志。
    """
    status_code, payload = to_http_error(error, trace_id=_ensure_trace_id(trace_id))
    return status_code, ErrorResponse.model_validate(payload)


def to_json_response(
    error: BaseException,
    *,
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """异常 → JSONResponse（含 trace/request header 透传）。"""
    status_code, response = to_error_response(error, trace_id=trace_id)
    content: Dict[str, Any] = response.model_dump()

    headers: Dict[str, str] = {}
    if trace_id:
        headers[TRACE_HEADER] = str(trace_id)
    if request_id:
        headers[REQUEST_HEADER] = str(request_id)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def install_exception_handlers(app: FastAPI) -> None:
    """注册 DomainError 与兜底 Exception 处理器。"""

    async def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        return to_json_response(
            exc,
            trace_id=getattr(request.state, "trace_id", None),
            request_id=getattr(request.state, "request_id", None),
        )

    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log_event(
            logger,
            logging.ERROR,
            "api.unhandled_error",
            context=request.state,
            fields={"path": request.url.path, "error": type(exc).__name__},
            exc_info=exc,
        )
        return to_json_response(
            exc,
            trace_id=getattr(request.state, "trace_id", None),
            request_id=getattr(request.state, "request_id", None),
        )

    app.add_exception_handler(DomainError, _domain_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)
