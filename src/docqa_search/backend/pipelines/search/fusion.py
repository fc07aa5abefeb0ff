# src/docqa_search/backend/pipelines/search/fusion.py

"""
[职责] 融合引擎：对合并后的候选计算 composite（权威）与 RRF（备选）分数，施加领域加权/泛用降权与 tag 奖励，按 fusion_mode 排序。
[边界] 不截断 top_k、不做 0-100 缩放（formatter 负责）；单个候选计算异常时丢弃该候选，不中断整批。
[上游关系] retriever.DualRetriever 产出的 RetrievalCandidate（ranks/order 已填充）。
[下游关系] formatter.ResultFormatter 消费 ScoredCandidate 列表（已排序）。
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from docqa_search.backend.pipelines.base.context import PipelineContext
from docqa_search.backend.pipelines.search.scoring import (
    composite_score,
    distance_fallback,
    domain_adjustment,
    matching_tag_count,
)
from docqa_search.backend.pipelines.search.types import QueryAnalysis, RetrievalCandidate, ScoredCandidate
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.utils.errors import ScoreComputationError
from docqa_search.backend.utils.logging_ import get_logger, log_event


logger = get_logger("pipelines.search.fusion")


def rrf_contribution(rank: int, *, k: int, weight: float = 1.0) -> float:
    """单来源 RRF 贡献：weight / (k + rank)，rank 为 1-based。"""
    if rank < 1:
        raise ValueError("rank must be >= 1")
    return weight / (k + rank)


def rrf_score(ranks: Dict[str, int], cfg: FusionConfig) -> float:
    """候选出现过的各来源 RRF 贡献之和；未出现的来源贡献 0。"""
    total = 0.0
    for source, rank in ranks.items():
        weight = cfg.rrf_weights.get(source)
        if weight is None:
            continue
        total += rrf_contribution(rank, k=cfg.rrf_k, weight=weight)
    return total


def tag_multiplier(tag_count: int, cfg: FusionConfig) -> float:
    if tag_count >= 2:
        return cfg.tag_bonus_multi
    if tag_count == 1:
        return cfg.tag_bonus_single
    return 1.0


class FusionEngine:
    """
    [职责] 逐候选评分并排序。
    [边界]
    - ScoreComputationError：composite 置空，排序分回退为距离分（WARNING 日志）。
    - 其他异常：丢弃该候选（WARNING 日志），记录到 ctx.errors["fusion"]。
    - 排序稳定：(-ranking_score, candidate.order)。
    """

    def __init__(self, cfg: FusionConfig) -> None:
        self.cfg = cfg

    def fuse(
        self,
        candidates: Sequence[RetrievalCandidate],
        analysis: QueryAnalysis,
        *,
        ctx: Optional[PipelineContext] = None,
    ) -> List[ScoredCandidate]:
        partial: List[Tuple[RetrievalCandidate, Optional[float], float, Dict[str, Any]]] = []
        dropped: List[str] = []

        for cand in candidates:
            try:
                partial.append(self._score_one(cand, analysis, ctx=ctx))
            except Exception as exc:  # noqa: BLE001 - per-candidate isolation
                dropped.append(cand.document_id)
                log_event(
                    logger,
                    logging.WARNING,
                    "fusion.candidate.dropped",
                    context=ctx,
                    fields={"document_id": cand.document_id, "error": type(exc).__name__},
                )
                if ctx is not None:
                    ctx.record_error("fusion", exc, dropped=list(dropped))

        max_rrf = max((p[2] for p in partial), default=0.0)
        scored: List[ScoredCandidate] = []
        for cand, adjusted, rrf, breakdown in partial:
            ranking = self._ranking_score(cand, adjusted, rrf, max_rrf)
            breakdown["ranking_score"] = ranking
            scored.append(
                ScoredCandidate(
                    candidate=cand,
                    composite_score=adjusted,
                    rrf_score=rrf,
                    ranking_score=ranking,
                    breakdown=breakdown,
                )
            )

        scored.sort(key=lambda s: (-s.ranking_score, s.candidate.order))
        return scored

    def _score_one(
        self,
        cand: RetrievalCandidate,
        analysis: QueryAnalysis,
        *,
        ctx: Optional[PipelineContext],
    ) -> Tuple[RetrievalCandidate, Optional[float], float, Dict[str, Any]]:
        cfg = self.cfg
        adjustment = domain_adjustment(cand.title, analysis.domain_terms, cfg)
        tags = matching_tag_count(cand.labels, analysis.core_keywords)
        tag_mult = tag_multiplier(tags, cfg)

        breakdown: Dict[str, Any] = {
            "vector": 0.0,
            "lexical": 0.0,
            "title": 0.0,
            "label": 0.0,
            "kg": 0.0,
            "domain_multiplier": adjustment.multiplier,
            "domain_adjustment": adjustment.kind,
            "tag_multiplier": tag_mult,
            "fallback": False,
        }

        adjusted: Optional[float]
        try:
            base, contributions = composite_score(cand, analysis, cfg)
            breakdown.update(contributions)
            breakdown["base_composite"] = base
            adjusted = base * adjustment.multiplier
            if not math.isfinite(adjusted) or adjusted < 0:
                raise ScoreComputationError(
                    message="adjusted composite is invalid",
                    detail={"document_id": cand.document_id},
                )
        except ScoreComputationError as exc:
            adjusted = None
            breakdown["fallback"] = True
            log_event(
                logger,
                logging.WARNING,
                "fusion.score.fallback",
                context=ctx,
                fields={"document_id": cand.document_id, "detail": exc.detail},
            )
            if ctx is not None:
                ctx.record_error("scoring", exc, document_id=cand.document_id)

        rrf = rrf_score(cand.ranks, cfg) * adjustment.multiplier * tag_mult
        return cand, adjusted, rrf, breakdown

    def _ranking_score(
        self,
        cand: RetrievalCandidate,
        adjusted: Optional[float],
        rrf: float,
        max_rrf: float,
    ) -> float:
        composite_part = adjusted
        if composite_part is None:
            composite_part = distance_fallback(cand.raw_vector_distance, self.cfg.max_vector_distance)

        mode = self.cfg.fusion_mode
        if mode == "composite":
            return composite_part
        rrf_norm = rrf / max_rrf if max_rrf > 0 else 0.0
        if mode == "rrf":
            return rrf_norm
        w = self.cfg.rrf_blend_weight
        return min(composite_part, 1.0) * (1.0 - w) + rrf_norm * w
