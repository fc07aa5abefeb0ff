# src/docqa_search/backend/api/schemas_http/_common.py

"""
[职责] HTTP Schema 公共组件：定义 TraceContext、ErrorResponse 与 DebugEnvelope，作为 API 契约基础。
[边界] 仅描述 HTTP 输入/输出结构；不负责 trace 注入、异常映射或业务逻辑。
[上游关系] api/middleware 注入 trace/request；api/errors 将 DomainError 映射到 ErrorResponse。
[下游关系] api/schemas_http/search 复用本模块结构。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from docqa_search.backend.schemas.ids import RequestId, TraceId


ErrorDetail = Dict[str, Any]  # docstring: ErrorResponse.error.detail 结构（必须 JSON-safe）


class TraceContext(BaseModel):
    """单次 HTTP 请求的 trace 字段（middleware 注入 request.state.trace_context）。"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    trace_id: TraceId = Field(...)
    request_id: RequestId = Field(...)
    parent_request_id: Optional[RequestId] = Field(default=None)


class ErrorInfo(BaseModel):
    """
    [职责] ErrorInfo：统一错误载体（code/message/trace_id/detail）。
    [边界] 不包含 HTTP status/retryable；这些由 api/errors.py 决定。
    """

    model_config = ConfigDict(extra="forbid")  # docstring: 锁死错误字段，避免 drift

    code: str = Field(..., min_length=1)  # docstring: 通用错误码或 area.reason 形式
    message: str = Field(..., min_length=1)
    trace_id: TraceId = Field(...)
    detail: ErrorDetail = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """HTTP 错误响应顶层包裹结构（trace_id/request_id 另由 header 透传）。"""

    model_config = ConfigDict(extra="forbid")

    error: ErrorInfo = Field(...)


class DebugEnvelope(BaseModel):
    """
    [职责] debug=true 时的统一调试封装（trace/request/timing/errors）。
    [边界] 仅保证结构稳定与可扩展。
    """

    model_config = ConfigDict(extra="allow")  # docstring: 允许扩展 keywords/errors 等细节

    trace_id: TraceId = Field(...)
    request_id: RequestId = Field(...)
    timing_ms: Dict[str, Any] = Field(default_factory=dict)
