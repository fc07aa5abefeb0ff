# playground/pipeline_gate/test_pipeline_concurrency_gate.py

"""
[职责] 并发 gate：验证 预处理∥embedding、向量路∥词法路 的重叠执行（总耗时明显小于串行之和）。
[边界] 用固定延迟的假依赖测墙钟时间；阈值留足调度余量。
[上游关系] backend/pipelines/search/pipeline.py、retriever.py。
[下游关系] 单次查询延迟取决于最慢分支而非各分支之和。
"""

from __future__ import annotations

import asyncio
import time

import pytest

from conftest import FakeLexicalIndex, FakeVectorIndex, doc
from docqa_search.backend.kb.interfaces import LexicalHit, VectorHit
from docqa_search.backend.pipelines.base.context import PipelineContext
from docqa_search.backend.pipelines.search.embedding import EmbeddingClient
from docqa_search.backend.pipelines.search.pipeline import SearchPipeline
from docqa_search.backend.pipelines.search.preprocess import QueryPreprocessor
from docqa_search.backend.pipelines.search.retriever import DualRetriever
from docqa_search.backend.schemas.search import FusionConfig


pytestmark = pytest.mark.pipeline_gate

DELAY_S = 0.3


class _SlowPreprocessor(QueryPreprocessor):
    def analyze(self, query):
        time.sleep(DELAY_S)  # docstring: CPU 阶段（在线程中执行）
        return super().analyze(query)


class _SlowEmbeddingProvider:
    async def embed(self, text):
        await asyncio.sleep(DELAY_S)
        return [1.0, 0.0, 0.0]


def _indexes(delay_s: float = 0.0):
    vector = FakeVectorIndex([VectorHit(doc("v", "予約カレンダー"), 0.2)], delay_s=delay_s)
    lexical = FakeLexicalIndex([LexicalHit(doc("a", "教室管理"), 5.0)], delay_s=delay_s)
    return vector, lexical


@pytest.mark.asyncio
async def test_vector_and_lexical_paths_run_concurrently() -> None:
    vector, lexical = _indexes(delay_s=DELAY_S)
    retriever = DualRetriever(vector_index=vector, lexical_index=lexical, timeout_s=5.0)
    ctx = PipelineContext.create()

    started = time.perf_counter()
    cands = await retriever.retrieve(QueryPreprocessor().analyze("教室管理"), [1.0, 0.0, 0.0], FusionConfig(), ctx=ctx)
    elapsed = time.perf_counter() - started

    assert {c.document_id for c in cands} == {"v", "a"}
    assert ctx.degraded_sources == []
    assert elapsed < 2 * DELAY_S * 0.85


@pytest.mark.asyncio
async def test_preprocess_and_embedding_overlap() -> None:
    vector, lexical = _indexes()
    pipeline = SearchPipeline(
        preprocessor=_SlowPreprocessor(),
        retriever=DualRetriever(vector_index=vector, lexical_index=lexical, timeout_s=5.0),
        embedder=EmbeddingClient(_SlowEmbeddingProvider(), initial_delay_s=0.0, max_delay_s=0.0),
    )
    ctx = PipelineContext.create()

    started = time.perf_counter()
    run = await pipeline.run("教室管理", FusionConfig(), ctx=ctx)
    elapsed = time.perf_counter() - started

    assert {r.document_id for r in run.results} == {"v", "a"}
    assert ctx.timing.get("preprocess") >= DELAY_S * 1000 * 0.9
    assert ctx.timing.get("embedding") >= DELAY_S * 1000 * 0.9
    assert elapsed < 2 * DELAY_S * 0.85
