# src/docqa_search/backend/api/deps.py

"""
[职责] API 依赖装配：提供 trace_context 与 SearchService 注入。
[边界] 不做业务逻辑；SearchService 由 app lifespan 构造并挂在 app.state，本模块只读取。
[上游关系] FastAPI 路由层 Depends 调用。
[下游关系] routers 通过本模块获取依赖实例。
"""

from __future__ import annotations

from fastapi import Request

from docqa_search.backend.api.schemas_http._common import TraceContext
from docqa_search.backend.schemas.ids import new_uuid
from docqa_search.backend.services.search_service import SearchService


def get_trace_context(request: Request) -> TraceContext:
    """
    [职责] 获取或创建 TraceContext（优先使用 middleware 注入）。
    [边界] 未经 middleware 时兜底生成并写回 request.state。
    """
    existing = getattr(request.state, "trace_context", None)
    if isinstance(existing, TraceContext):
        return existing

    ctx = TraceContext(trace_id=new_uuid(), request_id=new_uuid())
    request.state.trace_context = ctx
    request.state.trace_id = str(ctx.trace_id)
    request.state.request_id = str(ctx.request_id)
    return ctx


def get_search_service(request: Request) -> SearchService:
    """从 app.state 读取 lifespan 构造的 SearchService（未装配时抛 RuntimeError）。"""
    service = getattr(request.app.state, "search_service", None)
    if not isinstance(service, SearchService):
        raise RuntimeError("search service is not configured")
    return service
