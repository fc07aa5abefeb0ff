# src/docqa_search/backend/pipelines/search/retriever.py

"""
[职责] dual retriever：并发执行向量路径与词法路径（各自超时），取标签、逐路过滤、派生 title-exact 来源、可选 KG 富化，合并为按文档唯一的 RetrievalCandidate 列表。
[边界] 单路失败/超时只降级（记录 ctx.degraded_sources + WARNING 日志）；向量与词法全部不可用时抛 RetrievalUnavailableError。
[上游关系] pipeline 提供 QueryAnalysis + query 向量（可为 None，表示 embedding 已降级）。
[下游关系] fusion 使用 candidate.ranks（过滤后 1-based 名次）与 order（向量优先的原始顺序）。
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from docqa_search.backend.kb.interfaces import (
    GraphHit,
    KnowledgeGraphIndex,
    LexicalHit,
    LexicalIndex,
    MetadataStore,
    VectorHit,
    VectorIndex,
    maybe_await,
)
from docqa_search.backend.pipelines.base.context import PipelineContext
from docqa_search.backend.pipelines.search.filters import RelevanceFilter
from docqa_search.backend.pipelines.search.scoring import is_title_exact, label_score, title_match_ratio
from docqa_search.backend.pipelines.search.types import QueryAnalysis, RetrievalCandidate
from docqa_search.backend.schemas.documents import DocumentLabels, DocumentRef
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.utils.constants import (
    SOURCE_KNOWLEDGE_GRAPH,
    SOURCE_LEXICAL,
    SOURCE_TITLE_EXACT,
    SOURCE_VECTOR,
)
from docqa_search.backend.utils.errors import ProviderError, RetrievalUnavailableError
from docqa_search.backend.utils.logging_ import get_logger, log_event


logger = get_logger("pipelines.search.retriever")


@dataclass
class PathOutcome:
    """单路检索结果（hits 已按该路语义排序）。"""

    source: str
    hits: List[Any] = field(default_factory=list)
    ok: bool = True
    skipped: bool = False


@dataclass
class _Merged:
    document: DocumentRef
    source_kind: str
    order: int
    distance: Optional[float] = None
    lexical: Optional[float] = None
    kg: Optional[float] = None
    sources: List[str] = field(default_factory=list)
    ranks: Dict[str, int] = field(default_factory=dict)


class DualRetriever:
    """
    [职责] 组合 VectorIndex / LexicalIndex / MetadataStore / KnowledgeGraphIndex 执行一次检索。
    [边界] 依赖全部由构造注入；实例无请求级状态，可跨请求复用。
    """

    def __init__(
        self,
        *,
        vector_index: Optional[VectorIndex] = None,
        lexical_index: Optional[LexicalIndex] = None,
        metadata_store: Optional[MetadataStore] = None,
        kg_index: Optional[KnowledgeGraphIndex] = None,
        timeout_s: Optional[float] = 10.0,
    ) -> None:
        if vector_index is None and lexical_index is None:
            raise ValueError("at least one of vector_index/lexical_index is required")
        self.vector_index = vector_index
        self.lexical_index = lexical_index
        self.metadata_store = metadata_store
        self.kg_index = kg_index
        self.timeout_s = timeout_s

    async def retrieve(
        self,
        analysis: QueryAnalysis,
        query_vector: Optional[Sequence[float]],
        cfg: FusionConfig,
        *,
        ctx: PipelineContext,
    ) -> List[RetrievalCandidate]:
        limit = cfg.candidate_limit
        lexical_query = analysis.lexical_query()

        vector_outcome, lexical_outcome = await asyncio.gather(
            self._vector_path(query_vector, limit, cfg, ctx=ctx),
            self._lexical_path(lexical_query, limit, ctx=ctx),
        )

        if not vector_outcome.ok and not lexical_outcome.ok:
            raise RetrievalUnavailableError(
                detail={"degraded_sources": list(ctx.degraded_sources), "errors": sorted(ctx.errors)},
            )
        if vector_outcome.skipped and not lexical_outcome.ok:
            raise RetrievalUnavailableError(detail={"degraded_sources": list(ctx.degraded_sources)})
        if lexical_outcome.skipped and not vector_outcome.ok:
            raise RetrievalUnavailableError(detail={"degraded_sources": list(ctx.degraded_sources)})

        documents = _unique_documents([*vector_outcome.hits, *lexical_outcome.hits])
        labels = await self._load_labels(documents, ctx=ctx)

        with ctx.timing.stage("filter"):
            rf = RelevanceFilter(
                exclude_labels=cfg.exclude_labels,
                exclude_title_patterns=cfg.exclude_title_patterns,
            )
            vector_hits = rf.apply(
                vector_outcome.hits,
                title_of=lambda h: h.document.title,
                labels_of=lambda h: labels.get(h.document.id, DocumentLabels()),
            )
            lexical_hits = rf.apply(
                lexical_outcome.hits,
                title_of=lambda h: h.document.title,
                labels_of=lambda h: labels.get(h.document.id, DocumentLabels()),
            )

        merged = _merge(vector_hits, lexical_hits)
        _derive_title_exact(merged, analysis.core_keywords)
        if self.kg_index is not None and analysis.core_keywords and merged:
            kg_hits = await self._kg_path(self.kg_index, analysis.core_keywords, limit, ctx=ctx)
            _apply_kg(merged, kg_hits)

        candidates = [
            RetrievalCandidate(
                document=m.document,
                source_kind=m.source_kind,  # type: ignore[arg-type]
                raw_vector_distance=m.distance,
                raw_lexical_score=m.lexical,
                title_match_ratio=title_match_ratio(m.document.title, analysis.core_keywords),
                label_score=label_score(
                    labels.get(m.document.id, DocumentLabels()),
                    analysis.core_keywords,
                    functional_intent=analysis.functional_intent,
                ),
                labels=labels.get(m.document.id, DocumentLabels()),
                kg_relevance=m.kg,
                source_kinds=tuple(m.sources),
                ranks=dict(m.ranks),
                order=m.order,
            )
            for m in merged
        ]

        log_event(
            logger,
            logging.DEBUG,
            "retrieval.merged",
            context=ctx,
            fields={
                "vector_hits": len(vector_hits),
                "lexical_hits": len(lexical_hits),
                "candidates": len(candidates),
            },
        )
        return candidates

    # --- paths ---

    async def _vector_path(
        self,
        query_vector: Optional[Sequence[float]],
        limit: int,
        cfg: FusionConfig,
        *,
        ctx: PipelineContext,
    ) -> PathOutcome:
        if self.vector_index is None:
            return PathOutcome(SOURCE_VECTOR, skipped=True)
        if query_vector is None:
            ctx.mark_degraded(SOURCE_VECTOR)  # docstring: embedding 已失败
            return PathOutcome(SOURCE_VECTOR, ok=False)

        ok, hits = await self._guarded(
            SOURCE_VECTOR,
            lambda: self.vector_index.search(list(query_vector), limit),
            ctx=ctx,
        )
        if not ok:
            return PathOutcome(SOURCE_VECTOR, ok=False)

        ordered: List[VectorHit] = sorted(hits or [], key=lambda h: h.distance)
        if cfg.quality_threshold is not None:
            ordered = [h for h in ordered if h.distance <= cfg.quality_threshold]
        return PathOutcome(SOURCE_VECTOR, hits=_dedupe_hits(ordered))

    async def _lexical_path(self, query: str, limit: int, *, ctx: PipelineContext) -> PathOutcome:
        if self.lexical_index is None:
            return PathOutcome(SOURCE_LEXICAL, skipped=True)
        if not query:
            ctx.timing.add_ms(SOURCE_LEXICAL, 0.0, accumulate=False)
            return PathOutcome(SOURCE_LEXICAL)

        ok, hits = await self._guarded(
            SOURCE_LEXICAL,
            lambda: self.lexical_index.search(query, limit),
            ctx=ctx,
        )
        if not ok:
            return PathOutcome(SOURCE_LEXICAL, ok=False)
        ordered: List[LexicalHit] = sorted(hits or [], key=lambda h: -h.score)
        return PathOutcome(SOURCE_LEXICAL, hits=_dedupe_hits(ordered))

    async def _kg_path(
        self, kg_index: KnowledgeGraphIndex, keywords: Sequence[str], limit: int, *, ctx: PipelineContext
    ) -> List[GraphHit]:
        ok, hits = await self._guarded(
            SOURCE_KNOWLEDGE_GRAPH,
            lambda: kg_index.related(list(keywords), limit),
            ctx=ctx,
        )
        if not ok:
            return []
        return sorted(hits or [], key=lambda h: -h.relevance)

    async def _guarded(self, source: str, call: Callable[[], Any], *, ctx: PipelineContext) -> Tuple[bool, Any]:
        """
        [职责] 带超时执行单路调用；计时写入 ctx.timing[source]。
        [边界] 超时/异常 → (False, None)，记录 degraded + errors + WARNING；CancelledError 照常传播。
        """
        started = time.perf_counter()
        try:
            if self.timeout_s is not None and self.timeout_s > 0:
                result = await asyncio.wait_for(maybe_await(call()), timeout=self.timeout_s)
            else:
                result = await maybe_await(call())
            return True, result
        except asyncio.TimeoutError as exc:
            err = ProviderError(
                message=f"{source} path timed out",
                provider=source,
                detail={"timeout_s": self.timeout_s},
                cause=exc,
            )
            self._degrade(source, err, event="retrieval.path.timeout", ctx=ctx)
            return False, None
        except Exception as exc:  # noqa: BLE001 - path isolation
            self._degrade(source, exc, event="retrieval.path.failed", ctx=ctx)
            return False, None
        finally:
            ctx.timing.add_ms(source, (time.perf_counter() - started) * 1000.0, accumulate=False)

    def _degrade(self, source: str, error: BaseException, *, event: str, ctx: PipelineContext) -> None:
        ctx.mark_degraded(source)
        ctx.record_error(source, error)
        log_event(
            logger,
            logging.WARNING,
            event,
            context=ctx,
            fields={"source": source, "error": type(error).__name__},
        )

    async def _load_labels(self, documents: Sequence[DocumentRef], *, ctx: PipelineContext) -> Dict[str, DocumentLabels]:
        """
        [职责] 并发读取候选文档标签。
        [边界] metadata store 缺失或失败时以空标签继续（记录 ctx.errors["metadata"]）。
        """
        if self.metadata_store is None or not documents:
            return {}
        store = self.metadata_store
        with ctx.timing.stage("metadata"):
            results = await asyncio.gather(
                *(maybe_await(store.get_labels(doc)) for doc in documents),
                return_exceptions=True,
            )
        out: Dict[str, DocumentLabels] = {}
        for doc, res in zip(documents, results):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                ctx.record_error("metadata", res, document_id=doc.id)
                log_event(
                    logger,
                    logging.WARNING,
                    "retrieval.labels.failed",
                    context=ctx,
                    fields={"document_id": doc.id, "error": type(res).__name__},
                )
                continue
            out[doc.id] = res if isinstance(res, DocumentLabels) else DocumentLabels()
        return out


def _dedupe_hits(hits: Sequence[Any]) -> List[Any]:
    """同一路内按文档去重，保留首个（已排序，即最佳）命中。"""
    seen = set()
    out = []
    for h in hits:
        if h.document.id in seen:
            continue
        seen.add(h.document.id)
        out.append(h)
    return out


def _unique_documents(hits: Sequence[Any]) -> List[DocumentRef]:
    seen: Dict[str, DocumentRef] = {}
    for h in hits:
        seen.setdefault(h.document.id, h.document)
    return list(seen.values())


def _merge(vector_hits: Sequence[VectorHit], lexical_hits: Sequence[LexicalHit]) -> List[_Merged]:
    """向量优先、词法其次的合并；ranks 为过滤后列表中的 1-based 名次。"""
    by_id: Dict[str, _Merged] = {}
    merged: List[_Merged] = []

    for rank, hit in enumerate(vector_hits, start=1):
        m = _Merged(document=hit.document, source_kind=SOURCE_VECTOR, order=len(merged), distance=max(hit.distance, 0.0))
        m.sources.append(SOURCE_VECTOR)
        m.ranks[SOURCE_VECTOR] = rank
        by_id[hit.document.id] = m
        merged.append(m)

    for rank, hit in enumerate(lexical_hits, start=1):
        m = by_id.get(hit.document.id)
        if m is None:
            m = _Merged(document=hit.document, source_kind=SOURCE_LEXICAL, order=len(merged))
            by_id[hit.document.id] = m
            merged.append(m)
        m.lexical = max(hit.score, 0.0)
        m.sources.append(SOURCE_LEXICAL)
        m.ranks[SOURCE_LEXICAL] = rank
    return merged


def _derive_title_exact(merged: Sequence[_Merged], keywords: Sequence[str]) -> None:
    """标题精确命中的候选进入 title-exact 来源，按标题长度升序定名次（越短越精确）。"""
    exact = [m for m in merged if is_title_exact(m.document.title, keywords)]
    exact.sort(key=lambda m: (len(m.document.title), m.order))
    for rank, m in enumerate(exact, start=1):
        m.sources.append(SOURCE_TITLE_EXACT)
        m.ranks[SOURCE_TITLE_EXACT] = rank


def _apply_kg(merged: Sequence[_Merged], kg_hits: Sequence[GraphHit]) -> None:
    """KG 命中只富化已有候选（KG-only 文档无距离/分数证据，不单独成为候选）。"""
    by_id = {m.document.id: m for m in merged}
    rank = 0
    for hit in kg_hits:
        m = by_id.get(hit.document.id)
        if m is None or m.kg is not None:
            continue
        rank += 1
        m.kg = min(max(float(hit.relevance), 0.0), 1.0)
        m.sources.append(SOURCE_KNOWLEDGE_GRAPH)
        m.ranks[SOURCE_KNOWLEDGE_GRAPH] = rank
