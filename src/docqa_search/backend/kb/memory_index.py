# src/docqa_search/backend/kb/memory_index.py

"""
[职责] 进程内参考适配器：numpy 向量索引（cosine/L2 距离）与只读 metadata store。
[边界] 仅用于本地/测试；不持久化；写入接口只供装载，检索核心只调用 search/get_labels。
[上游关系] services 或测试装载文档后注入 pipeline。
[下游关系] retriever 通过 VectorIndex/MetadataStore 合同调用。
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np

from docqa_search.backend.kb.interfaces import VectorHit
from docqa_search.backend.schemas.documents import DocumentLabels, DocumentRef
from docqa_search.backend.utils.errors import ProviderError


DistanceMetric = Literal["cosine", "l2"]


class InMemoryVectorIndex:
    """
    [职责] 暴力检索向量索引（numpy 矩阵运算）。
    [边界] cosine 距离 = 1 - cos ∈ [0, 2]；l2 为欧氏距离；维度不一致抛 ProviderError。
    """

    def __init__(self, *, metric: DistanceMetric = "cosine") -> None:
        if metric not in ("cosine", "l2"):
            raise ValueError(f"unsupported metric: {metric}")
        self.metric = metric
        self._docs: List[DocumentRef] = []
        self._matrix: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self._docs)

    def add(self, document: DocumentRef, vector: Sequence[float]) -> None:
        self.add_many([(document, vector)])

    def add_many(self, items: Iterable[Tuple[DocumentRef, Sequence[float]]]) -> None:
        docs: List[DocumentRef] = []
        rows: List[np.ndarray] = []
        for doc, vec in items:
            docs.append(doc)
            rows.append(np.asarray(vec, dtype=np.float32).reshape(-1))
        if not rows:
            return
        block = np.vstack(rows)
        if self._matrix is not None and block.shape[1] != self._matrix.shape[1]:
            raise ValueError(f"dimension mismatch: {block.shape[1]} != {self._matrix.shape[1]}")
        self._matrix = block if self._matrix is None else np.vstack([self._matrix, block])
        self._docs.extend(docs)

    async def search(self, vector: Sequence[float], limit: int) -> List[VectorHit]:
        """按距离升序返回前 limit 条（同距离按装载顺序）。"""
        if self._matrix is None or limit <= 0:
            return []
        q = np.asarray(vector, dtype=np.float32).reshape(-1)
        if q.shape[0] != self._matrix.shape[1]:
            raise ProviderError(
                message="query vector dimension mismatch",
                provider="memory_vector_index",
                detail={"expected": int(self._matrix.shape[1]), "got": int(q.shape[0])},
                retryable=False,
            )

        if self.metric == "cosine":
            norms = np.linalg.norm(self._matrix, axis=1) * np.linalg.norm(q)
            norms[norms == 0] = 1.0
            sims = (self._matrix @ q) / norms
            distances = 1.0 - sims
        else:
            distances = np.linalg.norm(self._matrix - q, axis=1)

        distances = np.clip(distances, 0.0, None)
        order = np.argsort(distances, kind="stable")[: int(limit)]
        return [VectorHit(document=self._docs[int(i)], distance=float(distances[int(i)])) for i in order]


class InMemoryMetadataStore:
    """只读 label 查询（按文档 id）；缺失文档返回空 labels。"""

    def __init__(self, labels: Optional[Mapping[str, Any]] = None) -> None:
        self._labels: Dict[str, DocumentLabels] = {}
        for doc_id, raw in (labels or {}).items():
            self.put(doc_id, raw)

    def put(self, document_id: str, raw: Any) -> None:
        if isinstance(raw, DocumentLabels):
            value = raw
        elif isinstance(raw, Mapping):
            value = DocumentLabels.from_raw(raw.get("labels"), raw.get("structured_label"))
        else:
            value = DocumentLabels.from_raw(raw)
        self._labels[str(document_id)] = value

    async def get_labels(self, document: DocumentRef) -> DocumentLabels:
        return self._labels.get(document.id, DocumentLabels())
