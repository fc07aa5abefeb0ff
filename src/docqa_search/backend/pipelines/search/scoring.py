# src/docqa_search/backend/pipelines/search/scoring.py

"""
[职责] 评分原语：各信号归一化、标题匹配率、标签分（普通标签 20% + 结构化标签 80%）、KG 信号、领域加权/泛用降权、composite 合成。
[边界] 纯函数；不排序、不截断；NaN/inf 以 ScoreComputationError 抛出，由 fusion 捕获并回退。
[上游关系] retriever 用 title_match_ratio/label_score 填充候选；fusion 调用 composite_score/domain_adjustment。
[下游关系] ScoredCandidate.breakdown 记录各信号贡献。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Sequence, Tuple

from docqa_search.backend.pipelines.search.types import QueryAnalysis, RetrievalCandidate
from docqa_search.backend.schemas.documents import DocumentLabels, StructuredLabel
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.utils.constants import APPROVED_STATUS, SOURCE_TITLE_EXACT, TEMPLATE_CATEGORY_NAMES
from docqa_search.backend.utils.errors import ScoreComputationError


# --- structured label points ---
DOMAIN_MATCH_POINTS = 2.0
FEATURE_FULL_MATCH_POINTS = 3.0
FEATURE_PARTIAL_MATCH_POINTS = 1.5
TAG_MATCH_POINTS = 0.5
CATEGORY_MATCH_POINTS = 0.3
TEMPLATE_INTENT_CATEGORY_POINTS = 0.05  # docstring: 泛用模板分类 + 功能意图 query 时的分类分
APPROVED_STATUS_POINTS = 0.2
MAX_STRUCTURED_POINTS = 6.0  # docstring: 2 + 3 + 0.5 + 0.3 + 0.2

PLAIN_LABEL_SHARE = 0.2
STRUCTURED_LABEL_SHARE = 0.8

# --- knowledge-graph signal ---
KG_REFERENCE_FLOOR = 0.7  # docstring: KG 命中候选的最低信号
KG_DOMAIN_RELATED = 0.3  # docstring: 仅领域相关（无 KG 命中）的信号

DomainAdjustmentKind = Literal["penalty", "boost", "none"]


def _finite(value: float, *, signal: str) -> float:
    if value is None or not math.isfinite(value):
        raise ScoreComputationError(message="non-finite signal value", detail={"signal": signal})
    return float(value)


def _clamp01(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def normalize_vector(distance: Optional[float], max_distance: float) -> float:
    """normVector = 1 - min(d / maxD, 1)；缺失距离为 0。"""
    if distance is None:
        return 0.0
    d = _finite(distance, signal="vector")
    return 1.0 - min(max(d, 0.0) / max_distance, 1.0)


def normalize_lexical(score: Optional[float], max_score: float) -> float:
    """normLexical = min(s / maxS, 1)；缺失分数为 0。"""
    if score is None:
        return 0.0
    s = _finite(score, signal="lexical")
    return min(max(s, 0.0) / max_score, 1.0)


def title_match_ratio(title: str, keywords: Sequence[str]) -> float:
    """标题中出现的关键词占比（大小写不敏感子串匹配）。"""
    if not keywords:
        return 0.0
    t = str(title or "").lower()
    matched = sum(1 for kw in keywords if kw and kw.lower() in t)
    return matched / len(keywords)


def is_title_exact(title: str, keywords: Sequence[str]) -> bool:
    """
    [职责] title-exact 判定：标题包含关键词去空格拼接短语，或包含全部核心关键词。
    [边界] 无关键词时为 False。
    """
    if not keywords:
        return False
    t = str(title or "").lower().replace(" ", "").replace("　", "")
    phrase = "".join(k.lower() for k in keywords)
    if phrase and phrase in t:
        return True
    return all(k.lower() in t for k in keywords if k)


def _feature_full_match(feature: str, keywords: Sequence[str]) -> bool:
    """拼接关键词（空格/无空格/逆序）与功能名互为子串。"""
    lowered = [k.lower() for k in keywords if k]
    if not lowered:
        return False
    variants = {
        " ".join(lowered),
        "".join(lowered),
        "".join(reversed(lowered)),
        " ".join(reversed(lowered)),
    }
    return any(v and (v in feature or feature in v) for v in variants)


def _structured_points(label: StructuredLabel, keywords: Sequence[str], *, functional_intent: bool) -> float:
    lowered = [k.lower() for k in keywords if k]
    points = 0.0

    if label.domain:
        domain = label.domain.lower()
        if any(k in domain or domain in k for k in lowered):
            points += DOMAIN_MATCH_POINTS

    if label.feature:
        feature = label.feature.lower()
        if _feature_full_match(feature, keywords):
            points += FEATURE_FULL_MATCH_POINTS
        elif any(k in feature or feature in k for k in lowered):
            points += FEATURE_PARTIAL_MATCH_POINTS

    if label.tags:
        tags = [t.lower() for t in label.tags]
        if any(tag in k or k in tag for k in lowered for tag in tags):
            points += TAG_MATCH_POINTS

    if label.category:
        category = label.category.lower()
        if any(k in category or category in k for k in lowered):
            if functional_intent and category in TEMPLATE_CATEGORY_NAMES:
                points += TEMPLATE_INTENT_CATEGORY_POINTS
            else:
                points += CATEGORY_MATCH_POINTS

    if (label.status or "").lower() == APPROVED_STATUS:
        points += APPROVED_STATUS_POINTS
    return points


def label_score(labels: DocumentLabels, keywords: Sequence[str], *, functional_intent: bool = False) -> float:
    """
    [职责] 标签分 ∈ [0,1]：普通标签子串匹配率 ×0.2 + 结构化标签得分/6.0 ×0.8。
    [边界] 无关键词返回 0；无结构化标签时仅普通标签部分。
    """
    if not keywords:
        return 0.0
    lowered = [k.lower() for k in keywords if k]
    if not lowered:
        return 0.0

    score = 0.0
    if labels.labels:
        plain = [l.lower() for l in labels.labels]
        matched = sum(1 for k in lowered if any(k in l for l in plain))
        score += (matched / len(lowered)) * PLAIN_LABEL_SHARE

    if labels.structured_label is not None:
        points = _structured_points(labels.structured_label, keywords, functional_intent=functional_intent)
        score += min(points / MAX_STRUCTURED_POINTS, 1.0) * STRUCTURED_LABEL_SHARE
    return _clamp01(score)


def matching_tag_count(labels: DocumentLabels, keywords: Sequence[str]) -> int:
    """与 query 关键词匹配（互为子串）的不同结构化 tag 数。"""
    if labels.structured_label is None or not keywords:
        return 0
    lowered = [k.lower() for k in keywords if k]
    matched = {tag.lower() for tag in labels.structured_label.tags if any(tag.lower() in k or k in tag.lower() for k in lowered)}
    return len(matched)


def is_domain_related(candidate: RetrievalCandidate, domain_terms: Sequence[str]) -> bool:
    """标题或结构化领域包含 query 中任一领域词。"""
    if not domain_terms:
        return False
    title = candidate.title.lower()
    label = candidate.labels.structured_label
    domain = (label.domain or "").lower() if label is not None else ""
    for term in domain_terms:
        t = term.lower()
        if t in title or (domain and (t in domain or domain in t)):
            return True
    return False


def kg_signal(candidate: RetrievalCandidate, analysis: QueryAnalysis) -> float:
    """normKG：KG 命中 0.7–1.0；领域相关 0.3；否则 0。"""
    if candidate.kg_relevance is not None:
        rel = _clamp01(_finite(candidate.kg_relevance, signal="kg"))
        return KG_REFERENCE_FLOOR + (1.0 - KG_REFERENCE_FLOOR) * rel
    if is_domain_related(candidate, analysis.domain_terms):
        return KG_DOMAIN_RELATED
    return 0.0


@dataclass(frozen=True)
class DomainAdjustment:
    kind: DomainAdjustmentKind
    multiplier: float
    matched_terms: Tuple[str, ...] = ()


def domain_adjustment(title: str, domain_terms: Sequence[str], cfg: FusionConfig) -> DomainAdjustment:
    """
    [职责] 泛用文档降权（×generic_penalty）与领域加权（min(1 + step×count, cap)），二者互斥。
    [边界] 标题含泛用词则走降权分支，不再计算加权。
    """
    t = str(title or "").lower()
    generic = tuple(g for g in cfg.generic_document_terms if g.lower() in t)
    if generic:
        return DomainAdjustment(kind="penalty", multiplier=cfg.generic_penalty, matched_terms=generic)

    matched = tuple(dict.fromkeys(term for term in domain_terms if term and term.lower() in t))
    if matched:
        multiplier = min(1.0 + cfg.domain_boost_step * len(matched), cfg.domain_boost_cap)
        return DomainAdjustment(kind="boost", multiplier=multiplier, matched_terms=matched)
    return DomainAdjustment(kind="none", multiplier=1.0)


def normalized_signals(candidate: RetrievalCandidate, analysis: QueryAnalysis, cfg: FusionConfig) -> Dict[str, float]:
    """五路信号归一化值（[0,1]）。title-exact 来源的候选标题信号下限为 title_exact_floor。"""
    title = _finite(candidate.title_match_ratio, signal="title")
    if candidate.has_source(SOURCE_TITLE_EXACT):
        title = max(title, cfg.title_exact_floor)
    return {
        "vector": normalize_vector(candidate.raw_vector_distance, cfg.max_vector_distance),
        "lexical": normalize_lexical(candidate.raw_lexical_score, cfg.max_lexical_score),
        "title": _clamp01(title),
        "label": _clamp01(_finite(candidate.label_score, signal="label")),
        "kg": kg_signal(candidate, analysis),
    }


def composite_score(
    candidate: RetrievalCandidate, analysis: QueryAnalysis, cfg: FusionConfig
) -> Tuple[float, Dict[str, float]]:
    """
    [职责] composite = Σ norm × weight；返回 (score, 各信号贡献)。
    [边界] 结果非有限值抛 ScoreComputationError。
    """
    signals = normalized_signals(candidate, analysis, cfg)
    weights = {
        "vector": cfg.vector_weight,
        "lexical": cfg.lexical_weight,
        "title": cfg.title_weight,
        "label": cfg.label_weight,
        "kg": cfg.kg_weight,
    }
    contributions = {name: signals[name] * weights[name] for name in weights}
    total = sum(contributions.values())
    if not math.isfinite(total):
        raise ScoreComputationError(message="composite score is not finite", detail={"document_id": candidate.document_id})
    return total, contributions


def distance_fallback(distance: Optional[float], max_distance: float) -> float:
    """回退分数 ∈ [0,1]：max(0, 1 - d/maxD)；缺失或非有限距离为 0。"""
    if distance is None or not math.isfinite(distance) or max_distance <= 0:
        return 0.0
    return max(0.0, 1.0 - max(distance, 0.0) / max_distance)
