# src/docqa_search/backend/pipelines/search/formatter.py

"""
[职责] 结果格式化：排序分数缩放为 [0,100] 整数 final_score（非法值回退距离分），按文档去重，排序并截断 top_k。
[边界] 不重新评分；distance_threshold 只作用于仅有向量证据的结果。
[上游关系] fusion.FusionEngine 产出的 ScoredCandidate 列表（已按排序分数排好）。
[下游关系] FusedResult 列表交给 services/api。
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence

from docqa_search.backend.pipelines.search.scoring import distance_fallback
from docqa_search.backend.pipelines.search.types import FusedResult, ScoredCandidate
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.utils.constants import SOURCE_VECTOR


def _valid(score: Optional[float]) -> bool:
    return score is not None and math.isfinite(score) and score >= 0


def scale_score(score: Optional[float], *, distance: Optional[float], max_distance: float) -> int:
    """
    round(clamp(score × 100, 0, 100))；score 缺失/NaN/inf/负值时使用 round(max(0, 1 - d/maxD) × 100)。
    """
    if _valid(score):
        return int(round(min(max(score * 100.0, 0.0), 100.0)))
    return int(round(distance_fallback(distance, max_distance) * 100.0))


class ResultFormatter:
    def __init__(self, cfg: FusionConfig) -> None:
        self.cfg = cfg

    def _vector_only_too_far(self, item: ScoredCandidate) -> bool:
        threshold = self.cfg.distance_threshold
        cand = item.candidate
        if threshold is None or cand.raw_vector_distance is None:
            return False
        if tuple(cand.source_kinds) != (SOURCE_VECTOR,):
            return False
        return cand.raw_vector_distance > threshold

    def format(self, scored: Sequence[ScoredCandidate], *, top_k: Optional[int] = None) -> List[FusedResult]:
        """
        [职责] ScoredCandidate → FusedResult。
        [边界] 同一文档出现多次时保留 final_score 最高者（同分保留先出现者）；
        排序键为 (-final_score, 输入位置)。
        """
        limit = self.cfg.top_k if top_k is None else int(top_k)
        best: Dict[str, int] = {}
        rows: List[tuple] = []

        for position, item in enumerate(scored):
            if self._vector_only_too_far(item):
                continue
            cand = item.candidate
            final = scale_score(
                item.ranking_score,
                distance=cand.raw_vector_distance,
                max_distance=self.cfg.max_vector_distance,
            )
            composite = item.composite_score
            if not _valid(composite):
                composite = distance_fallback(cand.raw_vector_distance, self.cfg.max_vector_distance)
            breakdown = dict(item.breakdown)
            if not _valid(item.composite_score):
                breakdown["fallback"] = True

            result = FusedResult(
                document=cand.document,
                composite_score=min(float(composite), 1.0),
                rrf_score=float(item.rrf_score) if math.isfinite(item.rrf_score) else 0.0,
                score_breakdown=breakdown,
                final_score=final,
                source_kinds=tuple(cand.source_kinds),
                labels=tuple(cand.labels.labels),
            )

            doc_id = result.document_id
            if doc_id in best:
                idx = best[doc_id]
                if rows[idx][1].final_score >= final:
                    continue
                rows[idx] = (rows[idx][0], result)
                continue
            best[doc_id] = len(rows)
            rows.append((position, result))

        rows.sort(key=lambda r: (-r[1].final_score, r[0]))
        return [r[1] for r in rows[: max(limit, 0)]]
