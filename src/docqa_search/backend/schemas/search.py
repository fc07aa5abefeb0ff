# src/docqa_search/backend/schemas/search.py

"""
[职责] Search 契约层：定义单次检索的不可变配置 FusionConfig（权重/归一化上限/RRF/过滤/阈值/缓存 TTL）。
[边界] 不包含检索实现；不读取全局可变状态；默认值只来自 Settings 快照，运行期不被修改。
[上游关系] services/api 构造 FusionConfig（或 from_settings 派生）并显式传入 pipeline。
[下游关系] retriever/filters/fusion/formatter 只读使用；fingerprint 参与整体结果缓存 key。
"""

from __future__ import annotations

import hashlib
import math
from typing import TYPE_CHECKING, Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from docqa_search.backend.utils.constants import (
    DEFAULT_GENERIC_DOCUMENT_TERMS,
    SOURCE_KNOWLEDGE_GRAPH,
    SOURCE_LEXICAL,
    SOURCE_TITLE_EXACT,
    SOURCE_VECTOR,
)
from docqa_search.backend.utils.errors import ConfigurationError

if TYPE_CHECKING:
    from docqa_search.config import Settings


FusionMode = Literal["composite", "rrf", "blend"]  # docstring: composite 为权威排序；rrf 备选；blend 混合

WEIGHT_SUM_TOLERANCE = 0.01  # docstring: 权重和允许误差（sum≈1.0）


def _default_rrf_weights() -> Dict[str, float]:
    return {
        SOURCE_VECTOR: 1.0,
        SOURCE_LEXICAL: 0.8,
        SOURCE_TITLE_EXACT: 1.2,
        SOURCE_KNOWLEDGE_GRAPH: 0.6,
    }


class FusionConfig(BaseModel):
    """
    [职责] FusionConfig：一次检索的全部可调参数（显式、不可变、逐调用传入）。
    [边界] 构造时只做类型转换；业务约束在 ensure_valid() 中校验并抛 ConfigurationError（调用时 fail fast）。
    [上游关系] api/services 构造；from_settings 提供默认参考值。
    [下游关系] pipelines.search.* 全链路只读。
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    top_k: int = Field(default=10)  # docstring: 最终返回条数上限
    candidate_multiplier: int = Field(default=2)  # docstring: 每路候选上限 = top_k × multiplier

    vector_weight: float = Field(default=0.05)
    lexical_weight: float = Field(default=0.50)
    title_weight: float = Field(default=0.25)
    label_weight: float = Field(default=0.15)
    kg_weight: float = Field(default=0.05)

    max_vector_distance: float = Field(default=2.0)  # docstring: 向量距离归一化上限
    max_lexical_score: float = Field(default=10.0)  # docstring: 词法分数归一化上限

    fusion_mode: FusionMode = Field(default="composite")
    rrf_k: int = Field(default=60)
    rrf_weights: Dict[str, float] = Field(default_factory=_default_rrf_weights)  # docstring: 各来源 RRF 权重
    rrf_blend_weight: float = Field(default=0.3)  # docstring: blend 模式下 RRF（归一化后）占比

    exclude_labels: Tuple[str, ...] = Field(default_factory=tuple)
    exclude_title_patterns: Tuple[str, ...] = Field(default_factory=tuple)
    distance_threshold: Optional[float] = Field(default=None)  # docstring: 仅向量证据的结果距离上限（格式化阶段）
    quality_threshold: Optional[float] = Field(default=None)  # docstring: 向量路径距离上限（召回阶段）

    generic_document_terms: Tuple[str, ...] = Field(default=DEFAULT_GENERIC_DOCUMENT_TERMS)
    generic_penalty: float = Field(default=0.5)
    domain_boost_step: float = Field(default=0.5)
    domain_boost_cap: float = Field(default=2.0)
    tag_bonus_single: float = Field(default=2.0)
    tag_bonus_multi: float = Field(default=3.0)
    title_exact_floor: float = Field(default=0.9)

    use_result_cache: bool = Field(default=True)
    cache_ttl_ms: Optional[int] = Field(default=None)  # docstring: 整体结果缓存 TTL（None 使用 Settings）

    @field_validator("exclude_labels", "exclude_title_patterns", "generic_document_terms", mode="before")
    @classmethod
    def _coerce_str_tuple(cls, v: Any) -> Tuple[str, ...]:
        """列表/单字符串统一为去空白 tuple。"""
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        return tuple(str(x).strip() for x in v if str(x).strip())

    @classmethod
    def from_settings(cls, s: Optional["Settings"] = None, **overrides: Any) -> "FusionConfig":
        """
        [职责] 由 Settings 快照构造默认 FusionConfig，可附加覆盖项。
        [边界] 仅在构造时读取 Settings；之后实例不可变。
        [上游关系] services/api 调用。
        [下游关系] pipeline 使用。
        """
        if s is None:
            from docqa_search.config import settings as s  # docstring: 延迟导入，避免循环依赖

        base: Dict[str, Any] = {
            "top_k": s.DOCQA_TOP_K,
            "candidate_multiplier": s.DOCQA_CANDIDATE_MULTIPLIER,
            "vector_weight": s.DOCQA_VECTOR_WEIGHT,
            "lexical_weight": s.DOCQA_LEXICAL_WEIGHT,
            "title_weight": s.DOCQA_TITLE_WEIGHT,
            "label_weight": s.DOCQA_LABEL_WEIGHT,
            "kg_weight": s.DOCQA_KG_WEIGHT,
            "max_vector_distance": s.DOCQA_MAX_VECTOR_DISTANCE,
            "max_lexical_score": s.DOCQA_MAX_LEXICAL_SCORE,
            "rrf_k": s.DOCQA_RRF_K,
            "cache_ttl_ms": s.DOCQA_CACHE_RESULT_TTL_MS,
        }
        base.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**base)

    @property
    def candidate_limit(self) -> int:
        """每路召回上限（≥ top_k）。"""
        return max(int(self.top_k), int(self.top_k) * max(int(self.candidate_multiplier), 1))

    def weight_sum(self) -> float:
        return self.vector_weight + self.lexical_weight + self.title_weight + self.label_weight + self.kg_weight

    def ensure_valid(self) -> "FusionConfig":
        """
        [职责] 校验业务约束（权重和≈1、非负、归一化上限为正、top_k/rrf_k 为正）。
        [边界] 不修正配置；首个违例即抛 ConfigurationError。
        [上游关系] pipeline 入口调用（调用时 fail fast）。
        [下游关系] 通过后全链路可假设参数合法。
        """
        if self.top_k <= 0:
            raise ConfigurationError(message="top_k must be positive", detail={"top_k": self.top_k})
        if self.candidate_multiplier <= 0:
            raise ConfigurationError(
                message="candidate_multiplier must be positive",
                detail={"candidate_multiplier": self.candidate_multiplier},
            )
        weights = {
            "vector_weight": self.vector_weight,
            "lexical_weight": self.lexical_weight,
            "title_weight": self.title_weight,
            "label_weight": self.label_weight,
            "kg_weight": self.kg_weight,
        }
        for name, value in weights.items():
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(message=f"{name} must be a non-negative number", detail={name: value})
        total = self.weight_sum()
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ConfigurationError(
                message="signal weights must sum to 1.0",
                detail={"weight_sum": round(total, 6), **weights},
            )
        for name in ("max_vector_distance", "max_lexical_score"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ConfigurationError(message=f"{name} must be positive", detail={name: value})
        if self.rrf_k <= 0:
            raise ConfigurationError(message="rrf_k must be positive", detail={"rrf_k": self.rrf_k})
        if not 0.0 <= self.rrf_blend_weight <= 1.0:
            raise ConfigurationError(
                message="rrf_blend_weight must be within [0, 1]",
                detail={"rrf_blend_weight": self.rrf_blend_weight},
            )
        if not 0.0 < self.generic_penalty <= 1.0:
            raise ConfigurationError(
                message="generic_penalty must be within (0, 1]",
                detail={"generic_penalty": self.generic_penalty},
            )
        if self.domain_boost_cap < 1.0 or self.domain_boost_step < 0:
            raise ConfigurationError(
                message="domain boost must not shrink scores",
                detail={"domain_boost_cap": self.domain_boost_cap, "domain_boost_step": self.domain_boost_step},
            )
        for name in ("quality_threshold", "distance_threshold"):
            value = getattr(self, name)
            if value is not None and (not math.isfinite(value) or value < 0):
                raise ConfigurationError(message=f"{name} must be non-negative", detail={name: value})
        if self.cache_ttl_ms is not None and self.cache_ttl_ms <= 0:
            raise ConfigurationError(message="cache_ttl_ms must be positive", detail={"cache_ttl_ms": self.cache_ttl_ms})
        return self

    def fingerprint(self) -> str:
        """配置的稳定摘要（参与整体结果缓存 key）。"""
        raw = self.model_dump_json(exclude={"use_result_cache", "cache_ttl_ms"})
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()
