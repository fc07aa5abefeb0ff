# src/docqa_search/backend/api/schemas_http/search.py

"""
[职责] Search HTTP 契约：POST /search 的请求体与响应体。
[边界] 请求体字段只覆盖 FusionConfig 的对外子集；校验仅做形状与范围，权重等语义校验由 FusionConfig 完成。
[上游关系] routers/search 解析请求并调用 SearchService。
[下游关系] 前端/调用方消费 SearchResponse。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from docqa_search.backend.api.schemas_http._common import DebugEnvelope
from docqa_search.backend.schemas.search import FusionMode


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., min_length=1, max_length=2000)
    top_k: Optional[int] = Field(default=None, ge=1, le=100)
    fusion_mode: Optional[FusionMode] = Field(default=None)
    exclude_labels: Optional[List[str]] = Field(default=None)
    exclude_title_patterns: Optional[List[str]] = Field(default=None)
    quality_threshold: Optional[float] = Field(default=None, ge=0.0)
    debug: bool = Field(default=False)

    def config_overrides(self) -> Dict[str, Any]:
        """请求中显式给出的 FusionConfig 覆盖项（None 不覆盖）。"""
        raw = {
            "top_k": self.top_k,
            "fusion_mode": self.fusion_mode,
            "exclude_labels": self.exclude_labels,
            "exclude_title_patterns": self.exclude_title_patterns,
            "quality_threshold": self.quality_threshold,
        }
        return {k: v for k, v in raw.items() if v is not None}


class SearchHit(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_id: str
    title: str
    final_score: int = Field(..., ge=0, le=100)
    composite_score: float
    rrf_score: float
    source_kinds: List[str] = Field(default_factory=list)
    score_breakdown: Dict[str, Any] = Field(default_factory=dict)
    labels: List[str] = Field(default_factory=list)


class SearchDebugEnvelope(DebugEnvelope):
    keywords: List[str] = Field(default_factory=list)
    errors: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str
    hits: List[SearchHit] = Field(default_factory=list)
    degraded_sources: List[str] = Field(default_factory=list)
    cache_hit: bool = False
    debug: Optional[SearchDebugEnvelope] = None
