# playground/pipeline_gate/test_milvus_adapter_gate.py

"""
[职责] milvus adapter gate：验证 collection.search 结果规整为 VectorHit（相似度→距离、距离升序、payload 映射）与异常包装。
[边界] 使用同形 collection stub，不连接 Milvus。
[上游关系] backend/kb/milvus_index.py。
[下游关系] retriever 向量路径消费 VectorHit。
"""

from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace

import pytest

from conftest import FakeLexicalIndex, doc
from docqa_search.backend.kb.interfaces import LexicalHit
from docqa_search.backend.kb.milvus_index import MilvusVectorIndex
from docqa_search.backend.pipelines.base.context import PipelineContext
from docqa_search.backend.pipelines.search.preprocess import QueryPreprocessor
from docqa_search.backend.pipelines.search.retriever import DualRetriever
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.utils.errors import ProviderError


pytestmark = pytest.mark.pipeline_gate


class _Entity(dict):
    """pymilvus Hit.entity stub."""  # docstring: 支持 .get(field)


class _CollectionStub:
    def __init__(self, hits, *, error=None, sleep_s=0.0):
        self.hits = hits
        self.error = error
        self.sleep_s = sleep_s
        self.kwargs = None

    def search(self, **kwargs):
        self.kwargs = kwargs
        if self.sleep_s:
            time.sleep(self.sleep_s)  # docstring: 同步阻塞调用（同 pymilvus Collection.search）
        if self.error is not None:
            raise self.error
        return [self.hits]


def _hit(doc_id, score, title=""):
    return SimpleNamespace(
        id=doc_id,
        distance=score,
        entity=_Entity(document_id=doc_id, title=title, content=f"{title} body"),
    )


@pytest.mark.asyncio
async def test_cosine_similarity_becomes_ascending_distance() -> None:
    collection = _CollectionStub([_hit("a", 0.2, "low"), _hit("b", 0.95, "high")])
    index = MilvusVectorIndex(collection, metric_type="cosine")

    hits = await index.search([0.1, 0.2], 5)

    assert [h.document.id for h in hits] == ["b", "a"]
    assert hits[0].distance == pytest.approx(0.05)
    assert hits[0].document.title == "high"
    assert hits[0].document.content == "high body"
    assert collection.kwargs["limit"] == 5
    assert collection.kwargs["param"]["metric_type"] == "COSINE"


@pytest.mark.asyncio
async def test_l2_scores_are_used_as_distances() -> None:
    index = MilvusVectorIndex(_CollectionStub([_hit("a", 1.5), _hit("b", 0.5)]), metric_type="L2")

    hits = await index.search([0.0], 2)

    assert [(h.document.id, h.distance) for h in hits] == [("b", 0.5), ("a", 1.5)]


@pytest.mark.asyncio
async def test_search_failures_are_wrapped() -> None:
    index = MilvusVectorIndex(_CollectionStub([], error=ConnectionError("milvus down")))

    with pytest.raises(ProviderError) as exc_info:
        await index.search([0.0], 1)
    assert exc_info.value.provider == "milvus"


class _AsyncCollectionStub:
    def __init__(self, hits):
        self.hits = hits

    async def search(self, **kwargs):
        return [self.hits]


@pytest.mark.asyncio
async def test_async_collection_search_is_awaited() -> None:
    index = MilvusVectorIndex(_AsyncCollectionStub([_hit("a", 0.9)]))

    hits = await index.search([0.0], 1)

    assert [h.document.id for h in hits] == ["a"]


@pytest.mark.asyncio
async def test_blocking_collection_search_leaves_event_loop_free() -> None:
    index = MilvusVectorIndex(_CollectionStub([_hit("a", 0.9)], sleep_s=0.3))
    ticks = 0

    async def ticker() -> None:
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    task = asyncio.create_task(ticker())
    try:
        hits = await index.search([0.0], 1)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert [h.document.id for h in hits] == ["a"]
    assert ticks >= 5


@pytest.mark.asyncio
async def test_blocking_collection_search_respects_path_timeout() -> None:
    ctx = PipelineContext.create()
    retriever = DualRetriever(
        vector_index=MilvusVectorIndex(_CollectionStub([_hit("v", 0.9)], sleep_s=0.5)),
        lexical_index=FakeLexicalIndex([LexicalHit(doc("a", "教室管理"), 5.0)]),
        timeout_s=0.05,
    )

    started = time.perf_counter()
    cands = await retriever.retrieve(QueryPreprocessor().analyze("教室管理"), [1.0], FusionConfig(), ctx=ctx)
    elapsed = time.perf_counter() - started

    assert elapsed < 0.4
    assert [c.document_id for c in cands] == ["a"]
    assert ctx.degraded_sources == ["vector"]
    assert ctx.errors["vector"]["code"] == "search.provider"
