# src/docqa_search/backend/services/search_service.py

"""
[职责] search_service：Query API 服务入口（参数校验 + FusionConfig 解析 + 整体结果缓存 + pipeline 编排 + 查询摘要日志）。
[边界] 不处理 HTTP 语义；不持有全局单例（实例由调用方/应用 lifespan 构造并注入）；降级结果不写入整体缓存。
[上游关系] api/routers/search.py 或脚本调用 search(...)；依赖索引/provider/metadata store 注入。
[下游关系] SearchPipeline 执行检索；CacheManager `search` namespace 存储结果；SearchOutcome 返回调用方。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from docqa_search.backend.cache.manager import CacheManager, make_cache_key
from docqa_search.backend.kb.domain_keywords import DomainKeywordRegistry
from docqa_search.backend.kb.interfaces import (
    EmbeddingProvider,
    KnowledgeGraphIndex,
    LexicalIndex,
    MetadataStore,
    VectorIndex,
)
from docqa_search.backend.pipelines.base.context import PipelineContext
from docqa_search.backend.pipelines.search.embedding import EmbeddingClient
from docqa_search.backend.pipelines.search.pipeline import SearchPipeline
from docqa_search.backend.pipelines.search.preprocess import QueryPreprocessor
from docqa_search.backend.pipelines.search.retriever import DualRetriever
from docqa_search.backend.pipelines.search.types import FusedResult
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.utils.constants import CACHE_NAMESPACE_KEY, CACHE_NS_SEARCH
from docqa_search.backend.utils.errors import BadRequestError, CacheError, ConfigurationError
from docqa_search.backend.utils.logging_ import get_logger, hash_text, log_event, truncate_text


logger = get_logger("services.search")

ConfigInput = Union[FusionConfig, Mapping[str, Any], None]


@dataclass(frozen=True)
class SearchOutcome:
    """
    [职责] 单次查询的服务层结果（结果列表 + 降级来源 + 缓存命中 + timing/errors）。
    [边界] results 已按 final_score 降序、去重、截断至 top_k。
    """

    query: str
    results: List[FusedResult]
    degraded_sources: Tuple[str, ...] = ()
    cache_hit: bool = False
    keywords: Tuple[str, ...] = ()
    timing_ms: Dict[str, float] = field(default_factory=dict)
    errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    trace_id: Optional[str] = None
    request_id: Optional[str] = None


class SearchService:
    """
    [职责] 组合 SearchPipeline 与 CacheManager，对外提供 search(query, config)。
    [边界] owns_cache=True 时 close() 停止缓存后台清理线程。
    [上游关系] build() 从 Settings 装配；测试可直接注入 pipeline/cache。
    [下游关系] SearchOutcome。
    """

    def __init__(
        self,
        *,
        pipeline: SearchPipeline,
        cache: Optional[CacheManager] = None,
        base_config: Optional[FusionConfig] = None,
        registry: Optional[DomainKeywordRegistry] = None,
        owns_cache: bool = False,
    ) -> None:
        self.pipeline = pipeline
        self.cache = cache
        self.base_config = (base_config or FusionConfig.from_settings()).ensure_valid()
        self.registry = registry
        self._owns_cache = owns_cache

    @classmethod
    def build(
        cls,
        *,
        vector_index: Optional[VectorIndex] = None,
        lexical_index: Optional[LexicalIndex] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        metadata_store: Optional[MetadataStore] = None,
        kg_index: Optional[KnowledgeGraphIndex] = None,
        registry: Optional[DomainKeywordRegistry] = None,
        cache: Optional[CacheManager] = None,
        base_config: Optional[FusionConfig] = None,
        s: Any = None,
    ) -> "SearchService":
        """
        [职责] 按 Settings 装配完整服务（缓存/预处理/embedding/检索/pipeline）。
        [边界] cache 未注入时新建并由服务持有；embedding_provider 缺失时向量路径不启用。
        """
        if s is None:
            from docqa_search.config import settings as s

        owns_cache = cache is None
        if cache is None:
            cache = CacheManager.from_settings(s)

        preprocessor = QueryPreprocessor(
            registry=registry,
            cache=cache,
            cache_ttl_ms=s.DOCQA_CACHE_KEYWORD_TTL_MS,
        )
        embedder = None
        if embedding_provider is not None:
            embedder = EmbeddingClient.from_settings(embedding_provider, cache=cache, s=s)
        else:
            vector_index = None

        retriever = DualRetriever(
            vector_index=vector_index,
            lexical_index=lexical_index,
            metadata_store=metadata_store,
            kg_index=kg_index,
            timeout_s=s.DOCQA_RETRIEVAL_TIMEOUT_S,
        )
        pipeline = SearchPipeline(preprocessor=preprocessor, retriever=retriever, embedder=embedder)
        return cls(
            pipeline=pipeline,
            cache=cache,
            base_config=base_config or FusionConfig.from_settings(s),
            registry=registry,
            owns_cache=owns_cache,
        )

    def resolve_config(self, config: ConfigInput = None) -> FusionConfig:
        """
        [职责] 解析单次调用配置：FusionConfig 原样使用；Mapping 作为 base_config 的覆盖项并重新校验。
        [边界] 校验失败统一抛 ConfigurationError（快速失败）。
        """
        if config is None:
            cfg = self.base_config
        elif isinstance(config, FusionConfig):
            cfg = config
        else:
            overrides = {k: v for k, v in dict(config).items() if v is not None}
            try:
                cfg = FusionConfig.model_validate({**self.base_config.model_dump(), **overrides})
            except ValidationError as exc:
                raise ConfigurationError(
                    message="invalid fusion config override",
                    detail={"errors": [e.get("msg") for e in exc.errors()]},
                    cause=exc,
                ) from exc
        return cfg.ensure_valid()

    def result_cache_key(self, query: str, cfg: FusionConfig) -> str:
        return make_cache_key({"q": query.strip().lower(), "cfg": cfg.fingerprint()})

    async def search(
        self,
        query: str,
        config: ConfigInput = None,
        *,
        trace_id: Optional[str] = None,
        request_id: Optional[str] = None,
        debug: bool = False,
    ) -> SearchOutcome:
        """
        [职责] 执行一次检索：缓存快路径 → pipeline → 写缓存（仅无降级时）。
        [边界] 空 query 抛 BadRequestError；配置非法抛 ConfigurationError；全部来源失败抛 RetrievalUnavailableError。
        """
        q = str(query or "").strip()
        if not q:
            raise BadRequestError(message="query is required")
        cfg = self.resolve_config(config)

        ctx = PipelineContext.create(
            trace_id=trace_id,
            request_id=request_id,
            query_hash=hash_text(q),
            debug=debug,
        )

        cache = self.cache if cfg.use_result_cache else None
        key = self.result_cache_key(q, cfg) if cache is not None else ""
        if cache is not None:
            cached = self._cache_get(cache, key, ctx=ctx)
            if cached is not None:
                outcome = SearchOutcome(
                    query=q,
                    results=list(cached["results"]),
                    cache_hit=True,
                    keywords=tuple(cached.get("keywords") or ()),
                    timing_ms=ctx.timing_ms(),
                    trace_id=str(ctx.trace_id),
                    request_id=str(ctx.request_id),
                )
                self._log_summary(q, outcome, ctx=ctx)
                return outcome

        run = await self.pipeline.run(q, cfg, ctx=ctx)

        if cache is not None and not ctx.degraded_sources and not ctx.errors:
            self._cache_set(
                cache,
                key,
                {"results": run.results, "keywords": run.analysis.core_keywords},
                ttl_ms=cfg.cache_ttl_ms,
                ctx=ctx,
            )

        outcome = SearchOutcome(
            query=q,
            results=run.results,
            degraded_sources=tuple(ctx.degraded_sources),
            cache_hit=False,
            keywords=run.analysis.core_keywords,
            timing_ms=ctx.timing_ms(),
            errors=dict(ctx.errors),
            trace_id=str(ctx.trace_id),
            request_id=str(ctx.request_id),
        )
        self._log_summary(q, outcome, ctx=ctx)
        return outcome

    def search_sync(self, query: str, config: ConfigInput = None, **kwargs: Any) -> SearchOutcome:
        """同步入口（脚本/CLI 使用；不可在运行中的事件循环内调用）。"""
        return asyncio.run(self.search(query, config, **kwargs))

    def _cache_get(self, cache: CacheManager, key: str, *, ctx: PipelineContext) -> Optional[Dict[str, Any]]:
        try:
            return cache.get(CACHE_NS_SEARCH, key)
        except CacheError as exc:
            ctx.record_error("cache", exc)
            log_event(
                logger,
                logging.WARNING,
                "cache.error.treated_as_miss",
                context=ctx,
                fields={CACHE_NAMESPACE_KEY: CACHE_NS_SEARCH, "error": exc.message},
            )
            return None

    def _cache_set(
        self, cache: CacheManager, key: str, value: Dict[str, Any], *, ttl_ms: Optional[int], ctx: PipelineContext
    ) -> None:
        try:
            cache.set(CACHE_NS_SEARCH, key, value, ttl_ms=ttl_ms)
        except CacheError as exc:
            log_event(
                logger,
                logging.WARNING,
                "cache.error.write_skipped",
                context=ctx,
                fields={CACHE_NAMESPACE_KEY: CACHE_NS_SEARCH, "error": exc.message},
            )

    def _log_summary(self, query: str, outcome: SearchOutcome, *, ctx: PipelineContext) -> None:
        log_event(
            logger,
            logging.INFO,
            "search.completed",
            context=ctx,
            fields={
                "query_preview": truncate_text(query, max_len=32),
                "results": len(outcome.results),
                "top_score": outcome.results[0].final_score if outcome.results else None,
                "cache_hit": outcome.cache_hit,
                "degraded_sources": list(outcome.degraded_sources),
                "timing_ms": outcome.timing_ms,
            },
        )

    def health(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats() if self.cache is not None else None,
            "registry_initialized": bool(self.registry is not None and self.registry.initialized),
            "registry": self.registry.snapshot() if self.registry is not None else None,
        }

    def close(self) -> None:
        if self.cache is not None and self._owns_cache:
            self.cache.stop()
