# src/docqa_search/backend/api/routers/search.py

"""
[职责] Search Router：暴露检索接口（POST /search），负责 HTTP 入参映射与 SearchService 调用。
[边界] 不直接调用 pipeline；领域异常统一转为 ErrorResponse（含 trace header）。
[上游关系] 前端/外部调用发起检索请求。
[下游关系] SearchService 执行检索并返回 SearchOutcome。
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from docqa_search.backend.api.deps import get_search_service, get_trace_context
from docqa_search.backend.api.errors import to_json_response
from docqa_search.backend.api.schemas_http._common import TraceContext
from docqa_search.backend.api.schemas_http.search import (
    SearchDebugEnvelope,
    SearchHit,
    SearchRequest,
    SearchResponse,
)
from docqa_search.backend.pipelines.search.types import FusedResult
from docqa_search.backend.services.search_service import SearchOutcome, SearchService
from docqa_search.backend.utils.errors import DomainError


router = APIRouter(prefix="/search", tags=["search"])


def _to_hits(results: List[FusedResult]) -> List[SearchHit]:
    return [SearchHit.model_validate(r.to_dict()) for r in results]


def _to_response(outcome: SearchOutcome, *, debug: bool) -> SearchResponse:
    envelope = None
    if debug:
        envelope = SearchDebugEnvelope(
            trace_id=outcome.trace_id,
            request_id=outcome.request_id,
            timing_ms=dict(outcome.timing_ms),
            keywords=list(outcome.keywords),
            errors=dict(outcome.errors),
        )
    return SearchResponse(
        query=outcome.query,
        hits=_to_hits(outcome.results),
        degraded_sources=list(outcome.degraded_sources),
        cache_hit=outcome.cache_hit,
        debug=envelope,
    )


@router.post("", response_model=SearchResponse)
async def search_endpoint(
    request: SearchRequest,
    debug: bool = Query(False),
    service: SearchService = Depends(get_search_service),
    trace_context: TraceContext = Depends(get_trace_context),
) -> SearchResponse:
    """
    [职责] 执行一次检索并返回排序结果。
    [边界] debug 开关可来自 query 参数或请求体。
    """
    debug_enabled = bool(debug) or bool(request.debug)
    try:
        outcome = await service.search(
            request.query,
            request.config_overrides(),
            trace_id=str(trace_context.trace_id),
            request_id=str(trace_context.request_id),
            debug=debug_enabled,
        )
    except DomainError as exc:
        return to_json_response(  # type: ignore[return-value]
            exc,
            trace_id=str(trace_context.trace_id),
            request_id=str(trace_context.request_id),
        )
    return _to_response(outcome, debug=debug_enabled)
