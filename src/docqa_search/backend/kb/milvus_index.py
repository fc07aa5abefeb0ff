# src/docqa_search/backend/kb/milvus_index.py

"""
[职责] Milvus 向量索引适配器：将 collection.search 结果规整为 VectorHit（距离升序）。
[边界] 只读检索；不负责 collection 创建/写入（ingestion 协作方负责）；不直接 import pymilvus，接收 collection 句柄；同步 search 在线程中执行。
[上游关系] 调用方持有 pymilvus Collection（或同形对象）并注入。
[下游关系] retriever 通过 VectorIndex 合同调用 search。
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Dict, List, Optional, Sequence

from docqa_search.backend.kb.interfaces import VectorHit, maybe_await
from docqa_search.backend.schemas.documents import DocumentRef
from docqa_search.backend.utils.errors import ProviderError


SIMILARITY_METRICS = ("COSINE", "IP")  # docstring: 返回相似度（越大越近）的度量


class MilvusVectorIndex:
    """
    Read-only vector search over a Milvus collection handle.
    """

    def __init__(
        self,
        collection: Any,
        *,
        anns_field: str = "embedding",
        id_field: str = "document_id",
        title_field: str = "title",
        content_field: str = "content",
        metric_type: str = "COSINE",
        search_params: Optional[Dict[str, Any]] = None,
        expr: Optional[str] = None,
    ) -> None:
        self._collection = collection  # docstring: collection 句柄（sync/async 均可）
        self.anns_field = anns_field
        self.id_field = id_field
        self.title_field = title_field
        self.content_field = content_field
        self.metric_type = str(metric_type or "COSINE").strip().upper()
        self.search_params = dict(search_params or {"ef": 128, "nprobe": 16})
        self.expr = expr  # docstring: 过滤表达式（可选）

    def _to_distance(self, score: float) -> float:
        """COSINE/IP 相似度转为距离（1 - sim），L2 直接使用。"""
        if self.metric_type in SIMILARITY_METRICS:
            return max(0.0, 1.0 - float(score))
        return max(0.0, float(score))

    async def search(self, vector: Sequence[float], limit: int) -> List[VectorHit]:
        fields = [self.id_field, self.title_field, self.content_field]
        try:
            search_fn = self._collection.search
            kwargs: Dict[str, Any] = {
                "data": [list(vector)],  # docstring: 单 query 向量
                "anns_field": self.anns_field,
                "param": {"metric_type": self.metric_type, "params": self.search_params},
                "limit": int(limit),
                "expr": self.expr,
                "output_fields": fields,
            }
            if inspect.iscoroutinefunction(search_fn):
                raw = await search_fn(**kwargs)
            else:
                raw = await maybe_await(await asyncio.to_thread(search_fn, **kwargs))  # docstring: 同步句柄不阻塞事件循环
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(
                message="milvus search failed",
                provider="milvus",
                detail={"error_type": type(exc).__name__},
                cause=exc,
            ) from exc

        out: List[VectorHit] = []
        for hits in raw or []:
            for h in hits:
                entity = getattr(h, "entity", None)  # docstring: payload 容器
                payload: Dict[str, Any] = {}
                if entity is not None:
                    for f in fields:
                        getter = getattr(entity, "get", None)
                        payload[f] = getter(f) if callable(getter) else getattr(entity, f, None)
                doc_id = payload.get(self.id_field) or getattr(h, "id", None)
                if doc_id is None:
                    continue
                score = getattr(h, "distance", None)
                if score is None:
                    score = getattr(h, "score", 0.0)
                out.append(
                    VectorHit(
                        document=DocumentRef(
                            id=str(doc_id),
                            title=str(payload.get(self.title_field) or ""),
                            content=str(payload.get(self.content_field) or ""),
                        ),
                        distance=self._to_distance(float(score or 0.0)),
                    )
                )
            break  # docstring: 仅一个 query 向量

        out.sort(key=lambda x: x.distance)  # docstring: 合同要求距离升序（sort 稳定）
        return out
