# src/docqa_search/backend/kb/interfaces.py

"""
[职责] 外部协作方接口合同：embedding provider / 向量索引 / 词法索引 / metadata store / 知识图谱索引（结构化子类型）。
[边界] 只定义调用形状与命中结构；不包含任何实现；索引对检索核心只读。
[上游关系] kb/memory_index、kb/milvus_index、db/fts、db/repo 提供参考实现；调用方可注入任意满足合同的对象。
[下游关系] pipelines/search/embedding 与 retriever 通过本合同调用外部依赖。
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, List, Protocol, Sequence, runtime_checkable

from docqa_search.backend.schemas.documents import DocumentLabels, DocumentRef


@dataclass(frozen=True)
class VectorHit:
    """向量索引命中：document + 距离（越小越近，≥0）。"""

    document: DocumentRef
    distance: float


@dataclass(frozen=True)
class LexicalHit:
    """词法索引命中：document + 分数（越大越相关，≥0）。"""

    document: DocumentRef
    score: float


@dataclass(frozen=True)
class GraphHit:
    """知识图谱命中：document + 相关度（[0,1]）。"""

    document: DocumentRef
    relevance: float


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    [职责] embedding provider 合同：embed(text) -> float 向量。
    [边界] 失败抛 ProviderError（payload_too_large 标记超限）；可选实现 embed_batch。
    """

    async def embed(self, text: str) -> List[float]: ...


@runtime_checkable
class BatchEmbeddingProvider(EmbeddingProvider, Protocol):
    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]: ...


class VectorIndex(Protocol):
    """向量索引合同：返回按距离升序的命中列表。"""

    async def search(self, vector: Sequence[float], limit: int) -> List[VectorHit]: ...


class LexicalIndex(Protocol):
    """词法索引合同：返回按分数降序的命中列表。"""

    async def search(self, query: str, limit: int) -> List[LexicalHit]: ...


class MetadataStore(Protocol):
    """metadata store 合同（只读）：按文档取 labels + structured_label。"""

    async def get_labels(self, document: DocumentRef) -> DocumentLabels: ...


class KnowledgeGraphIndex(Protocol):
    """知识图谱合同（可选）：按关键词返回相关文档。"""

    async def related(self, keywords: Sequence[str], limit: int) -> List[GraphHit]: ...


async def maybe_await(value: Any) -> Any:
    """
    Normalize adapter calls: some return plain values, others return awaitables.
    """  # docstring: 兼容 sync/async 两种适配器形态
    if inspect.isawaitable(value):
        return await value
    return value
