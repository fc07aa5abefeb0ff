# src/docqa_search/backend/pipelines/search/types.py
"""
[职责] Search types：检索各阶段共享的强类型结构（QueryAnalysis / RetrievalCandidate / ScoredCandidate / FusedResult）。
[边界] 仅定义数据结构与不变量校验；不包含任何检索/评分逻辑。
[上游关系] preprocess/retriever/fusion/formatter 等模块 import 使用。
[下游关系] 统一各阶段语义，缺失信号以 Optional 字段显式表达。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple

from docqa_search.backend.schemas.documents import DocumentLabels, DocumentRef


SourceKind = Literal["vector", "lexical", "title-exact", "knowledge-graph"]  # docstring: 信号来源枚举


@dataclass(frozen=True)
class QueryAnalysis:
    """
    [职责] 预处理结果：核心关键词（源顺序、去重）、被移除词、优先关键词、领域词与功能意图标记。
    [边界] 空 query 或全被过滤时 core_keywords 为空（非错误）。
    [上游关系] preprocess.QueryPreprocessor.analyze 产出。
    [下游关系] retriever 构造词法查询；scoring/fusion 计算标题/标签/领域信号。
    """

    query: str
    core_keywords: Tuple[str, ...]
    removed_words: Tuple[str, ...]
    priority_keywords: Tuple[str, ...]
    domain_terms: Tuple[str, ...] = ()
    functional_intent: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.core_keywords

    def lexical_query(self) -> str:
        """词法检索查询串：核心关键词空白拼接；无关键词时为空串（词法路跳过，仅依赖向量信号）。"""
        return " ".join(self.core_keywords)


@dataclass(frozen=True)
class RetrievalCandidate:
    """
    [职责] 单文档的检索候选（合并 vector/lexical/title-exact/knowledge-graph 证据）。
    [边界] raw_vector_distance 与 raw_lexical_score 至少其一存在；ratio/score 均在 [0,1]。
    [上游关系] retriever 构造与合并。
    [下游关系] filters 过滤；fusion 评分。
    """

    document: DocumentRef
    source_kind: SourceKind  # docstring: 首次出现的来源
    raw_vector_distance: Optional[float] = None
    raw_lexical_score: Optional[float] = None
    title_match_ratio: float = 0.0
    label_score: float = 0.0
    labels: DocumentLabels = field(default_factory=DocumentLabels)
    kg_relevance: Optional[float] = None  # docstring: 知识图谱相关度（无 KG 命中为 None）
    source_kinds: Tuple[str, ...] = ()  # docstring: 出现过的全部来源
    ranks: Dict[str, int] = field(default_factory=dict)  # docstring: source -> 1-based rank
    order: int = 0  # docstring: 原始检索顺序（vector 优先，其次 lexical），用于稳定排序

    def __post_init__(self) -> None:
        if self.raw_vector_distance is None and self.raw_lexical_score is None:
            raise ValueError("candidate requires a vector distance or a lexical score")
        if self.raw_vector_distance is not None and self.raw_vector_distance < 0:
            raise ValueError("raw_vector_distance must be >= 0")
        if self.raw_lexical_score is not None and self.raw_lexical_score < 0:
            raise ValueError("raw_lexical_score must be >= 0")
        if not 0.0 <= self.title_match_ratio <= 1.0:
            raise ValueError("title_match_ratio must be within [0, 1]")
        if not 0.0 <= self.label_score <= 1.0:
            raise ValueError("label_score must be within [0, 1]")
        if not self.source_kinds:
            object.__setattr__(self, "source_kinds", (self.source_kind,))

    @property
    def document_id(self) -> str:
        return self.document.id

    @property
    def title(self) -> str:
        return self.document.title

    def has_source(self, source: str) -> bool:
        return source in self.source_kinds


@dataclass(frozen=True)
class ScoredCandidate:
    """
    [职责] 融合引擎输出：候选 + composite/RRF 分数 + 排序分数 + 分数细节。
    [边界] composite_score 可能为 None（计算失败时，由 formatter 回退为距离分）。
    [上游关系] fusion.FusionEngine 产出。
    [下游关系] formatter 转换为 FusedResult。
    """

    candidate: RetrievalCandidate
    composite_score: Optional[float]
    rrf_score: float
    ranking_score: float  # docstring: 按 fusion_mode 决定的排序分数
    breakdown: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FusedResult:
    """
    [职责] 对外最终结果：final_score 为 [0,100] 的有限整数。
    [边界] 构造时校验 final_score 合法；不携带向量。
    [上游关系] formatter 产出。
    [下游关系] services/api 返回调用方。
    """

    document: DocumentRef
    composite_score: float
    rrf_score: float
    score_breakdown: Dict[str, Any]
    final_score: int
    source_kinds: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.final_score, int) or isinstance(self.final_score, bool):
            raise ValueError("final_score must be an int")
        if not 0 <= self.final_score <= 100:
            raise ValueError("final_score must be within [0, 100]")
        if not math.isfinite(self.composite_score):
            raise ValueError("composite_score must be finite")

    @property
    def document_id(self) -> str:
        return self.document.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document.id,
            "title": self.document.title,
            "final_score": self.final_score,
            "composite_score": self.composite_score,
            "rrf_score": self.rrf_score,
            "source_kinds": list(self.source_kinds),
            "score_breakdown": dict(self.score_breakdown),
            "labels": list(self.labels),
        }
