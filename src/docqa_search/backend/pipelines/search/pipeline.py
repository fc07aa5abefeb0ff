# src/docqa_search/backend/pipelines/search/pipeline.py

"""
[职责] search pipeline：编排 preprocess ∥ embedding → dual retrieval → fusion → format 全链路，产出 FusedResult 列表。
[边界] 不做整体结果缓存（services 负责）；embedding 失败降级为无向量信号；仅 RetrievalUnavailableError/ConfigurationError 向外传播。
[上游关系] services/search_service 每次查询调用 run，注入 PipelineContext 与 FusionConfig。
[下游关系] FusedResult 列表 + ctx.timing/errors/degraded_sources 供响应与日志使用。
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from docqa_search.backend.pipelines.base.context import PipelineContext
from docqa_search.backend.pipelines.search.embedding import EmbeddingClient
from docqa_search.backend.pipelines.search.formatter import ResultFormatter
from docqa_search.backend.pipelines.search.fusion import FusionEngine
from docqa_search.backend.pipelines.search.preprocess import QueryPreprocessor
from docqa_search.backend.pipelines.search.retriever import DualRetriever
from docqa_search.backend.pipelines.search.types import FusedResult, QueryAnalysis
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.utils.constants import SOURCE_VECTOR
from docqa_search.backend.utils.logging_ import get_logger, log_event


logger = get_logger("pipelines.search.pipeline")


@dataclass(frozen=True)
class PipelineResult:
    """单次 pipeline 运行产物。"""

    analysis: QueryAnalysis
    results: List[FusedResult]
    candidate_count: int


class SearchPipeline:
    """
    [职责] 持有 preprocessor/embedder/retriever（跨请求复用），每次 run 构造无状态的 fusion/formatter。
    [边界] embedder 为 None 时跳过向量路径（纯词法检索）。
    """

    def __init__(
        self,
        *,
        preprocessor: QueryPreprocessor,
        retriever: DualRetriever,
        embedder: Optional[EmbeddingClient] = None,
    ) -> None:
        self.preprocessor = preprocessor
        self.retriever = retriever
        self.embedder = embedder

    async def run(self, query: str, cfg: FusionConfig, *, ctx: PipelineContext) -> PipelineResult:
        cfg.ensure_valid()

        analysis, vector = await asyncio.gather(
            self._preprocess(query, ctx=ctx),
            self._embed(query, ctx=ctx),
        )

        candidates = await self.retriever.retrieve(analysis, vector, cfg, ctx=ctx)

        with ctx.timing.stage("fusion"):
            scored = FusionEngine(cfg).fuse(candidates, analysis, ctx=ctx)
        with ctx.timing.stage("format"):
            results = ResultFormatter(cfg).format(scored, top_k=cfg.top_k)

        log_event(
            logger,
            logging.INFO,
            "search.pipeline.completed",
            context=ctx,
            fields={
                "keywords": len(analysis.core_keywords),
                "candidates": len(candidates),
                "results": len(results),
                "fusion_mode": cfg.fusion_mode,
                "degraded_sources": list(ctx.degraded_sources),
                "timing_ms": ctx.timing_ms(include_total=False),
            },
        )
        return PipelineResult(analysis=analysis, results=results, candidate_count=len(candidates))

    async def _preprocess(self, query: str, *, ctx: PipelineContext) -> QueryAnalysis:
        started = time.perf_counter()
        try:
            return await asyncio.to_thread(self.preprocessor.analyze, query)
        finally:
            ctx.timing.add_ms("preprocess", (time.perf_counter() - started) * 1000.0, accumulate=False)

    async def _embed(self, query: str, *, ctx: PipelineContext) -> Optional[List[float]]:
        """embedding 失败（重试耗尽）时返回 None，向量路径降级。"""
        if self.embedder is None or self.retriever.vector_index is None:
            return None
        started = time.perf_counter()
        try:
            return await self.embedder.embed_query(query)
        except Exception as exc:  # noqa: BLE001 - degrade to missing vector signal
            ctx.record_error("embedding", exc)
            ctx.mark_degraded(SOURCE_VECTOR)
            log_event(
                logger,
                logging.WARNING,
                "search.embedding.failed",
                context=ctx,
                fields={"error": type(exc).__name__},
            )
            return None
        finally:
            ctx.timing.add_ms("embedding", (time.perf_counter() - started) * 1000.0, accumulate=False)
