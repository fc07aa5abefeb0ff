# src/docqa_search/backend/schemas/documents.py

"""
[职责] 文档契约层：定义检索核心只读消费的文档引用（DocumentRef）与标签结构（StructuredLabel/DocumentLabels）。
[边界] 文档由 ingestion 协作方写入；本层不包含持久化/同步逻辑；所有模型不可变（frozen）。
[上游关系] 向量索引/词法索引返回 DocumentRef；metadata store 返回 DocumentLabels。
[下游关系] retriever 组装 RetrievalCandidate；scoring/filters 读取 title/labels/structured_label。
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DocumentRef(BaseModel):
    """
    [职责] DocumentRef：索引命中的最小文档引用（id/title/content 摘要）。
    [边界] 不携带向量；content 可为 chunk 文本或空。
    [上游关系] VectorIndex/LexicalIndex.search 返回。
    [下游关系] RetrievalCandidate.document；formatter 输出 title。
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)  # docstring: 稳定文档ID
    title: str = Field(default="")  # docstring: 文档标题
    content: str = Field(default="")  # docstring: chunk 文本（可空）


class StructuredLabel(BaseModel):
    """
    [职责] StructuredLabel：文档的结构化标签（分类/领域/功能/优先级/状态/标签/置信度）。
    [边界] 所有字段可空；tags 统一为 tuple 以保证不可变。
    [上游关系] metadata store 从 ingestion 产物中读取。
    [下游关系] scoring.label_score 与 fusion 的 tag bonus / 领域相关判定。
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    category: Optional[str] = None
    domain: Optional[str] = None
    feature: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    tags: Tuple[str, ...] = Field(default_factory=tuple)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, v: Any) -> Tuple[str, ...]:
        """tags 兼容 None / 单字符串 / 列表。"""
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,) if v.strip() else ()
        return tuple(str(t) for t in v if str(t).strip())

    def is_empty(self) -> bool:
        """category/domain/feature 均缺失时视为无结构化标签。"""
        return not (self.category or self.domain or self.feature)


class DocumentLabels(BaseModel):
    """metadata store 的读取结果：自由文本 labels + 可选 StructuredLabel。"""

    model_config = ConfigDict(frozen=True, extra="ignore")

    labels: Tuple[str, ...] = Field(default_factory=tuple)
    structured_label: Optional[StructuredLabel] = None

    @field_validator("labels", mode="before")
    @classmethod
    def _coerce_labels(cls, v: Any) -> Tuple[str, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,) if v.strip() else ()
        return tuple(str(x) for x in v if str(x).strip())

    @classmethod
    def from_raw(cls, labels: Any = None, structured: Optional[Dict[str, Any]] = None) -> "DocumentLabels":
        """从 DB/JSON 原始值构造（structured 为空 dict 时视为缺失）。"""
        label = StructuredLabel.model_validate(structured) if structured else None
        if label is not None and label.is_empty() and not label.tags:
            label = None  # docstring: 全空结构化标签不参与评分
        return cls(labels=labels, structured_label=label)
