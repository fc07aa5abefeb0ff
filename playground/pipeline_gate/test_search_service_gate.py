# playground/pipeline_gate/test_search_service_gate.py

"""
[职责] search service gate：端到端验证 预处理∥embedding → 双路检索 → 融合 → 格式化，以及整体结果缓存、降级与错误传播。
[边界] 假 provider/索引；Settings 显式构造（不读取 .env）。
[上游关系] backend/services/search_service.py + pipelines/search/pipeline.py。
[下游关系] api/routers/search.py 依赖 SearchOutcome 的字段语义。
"""

from __future__ import annotations

import pytest

from conftest import FakeEmbeddingProvider, FakeLexicalIndex, FakeVectorIndex, doc
from docqa_search.backend.cache.manager import CacheManager
from docqa_search.backend.kb.interfaces import LexicalHit, VectorHit
from docqa_search.backend.kb.memory_index import InMemoryVectorIndex
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.services.search_service import SearchService
from docqa_search.backend.utils.constants import CACHE_NS_SEARCH
from docqa_search.backend.utils.errors import BadRequestError, ConfigurationError, RetrievalUnavailableError
from docqa_search.config import Settings


pytestmark = pytest.mark.pipeline_gate


def _settings(**overrides) -> Settings:
    values = {
        "DOCQA_RETRIEVAL_TIMEOUT_S": 0.2,
        "DOCQA_EMBED_MAX_RETRIES": 1,
        "DOCQA_EMBED_INITIAL_DELAY_S": 0.0,
        "DOCQA_EMBED_MAX_DELAY_S": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


def _lexical_hits():
    return [
        LexicalHit(doc("doc1", "教室管理機能の詳細"), 15.5),
        LexicalHit(doc("doc2", "ログイン機能について"), 8.2),
    ]


def _service(cache, *, vector=None, lexical=None, provider=None, registry=None, **kwargs) -> SearchService:
    return SearchService.build(
        vector_index=vector,
        lexical_index=lexical,
        embedding_provider=provider,
        registry=registry,
        cache=cache,
        base_config=FusionConfig(**kwargs),
        s=_settings(),
    )


@pytest.mark.asyncio
async def test_lexical_search_end_to_end(cache) -> None:
    lexical = FakeLexicalIndex(_lexical_hits())
    service = _service(cache, lexical=lexical)

    outcome = await service.search("教室管理の方法", trace_id="trace-1")

    assert lexical.queries == ["教室管理"]  # docstring: noise words removed before lexical search
    assert outcome.keywords == ("教室管理",)
    assert [(r.document_id, r.final_score) for r in outcome.results] == [("doc1", 75), ("doc2", 41)]
    assert outcome.degraded_sources == ()
    assert outcome.cache_hit is False
    assert outcome.trace_id == "trace-1"
    assert {"preprocess", "lexical", "fusion", "format", "total"} <= set(outcome.timing_ms)


@pytest.mark.asyncio
async def test_vector_timeout_returns_lexical_results(cache) -> None:
    vector = FakeVectorIndex([VectorHit(doc("vec", "vector only"), 0.1)], delay_s=2.0)
    lexical = FakeLexicalIndex(_lexical_hits())
    service = _service(cache, vector=vector, lexical=lexical, provider=FakeEmbeddingProvider())

    outcome = await service.search("教室管理")

    assert [r.document_id for r in outcome.results] == ["doc1", "doc2"]
    assert all(r.source_kinds[0] == "lexical" for r in outcome.results)
    assert outcome.degraded_sources == ("vector",)
    assert "vector" in outcome.errors
    assert cache.keys(CACHE_NS_SEARCH) == []  # docstring: degraded results are not cached


@pytest.mark.asyncio
async def test_embedding_failure_degrades_vector_path(cache) -> None:
    vector = FakeVectorIndex([VectorHit(doc("vec", "vector only"), 0.1)])
    provider = FakeEmbeddingProvider(fail_times=5, retryable=False)
    service = _service(cache, vector=vector, lexical=FakeLexicalIndex(_lexical_hits()), provider=provider)

    outcome = await service.search("教室管理")

    assert vector.calls == 0
    assert outcome.degraded_sources == ("vector",)
    assert "embedding" in outcome.errors
    assert [r.document_id for r in outcome.results] == ["doc1", "doc2"]


@pytest.mark.asyncio
async def test_hybrid_search_merges_vector_and_lexical(cache) -> None:
    index = InMemoryVectorIndex()
    index.add(doc("doc1", "教室管理機能の詳細"), [1.0, 0.0, 0.0])
    index.add(doc("vec", "予約カレンダー"), [0.9, 0.1, 0.0])
    provider = FakeEmbeddingProvider({"教室管理": [1.0, 0.0, 0.0]})
    service = _service(cache, vector=index, lexical=FakeLexicalIndex(_lexical_hits()), provider=provider)

    outcome = await service.search("教室管理")
    by_id = {r.document_id: r for r in outcome.results}

    assert outcome.results[0].document_id == "doc1"
    assert by_id["doc1"].source_kinds[:2] == ("vector", "lexical")
    assert set(by_id) == {"doc1", "doc2", "vec"}
    assert outcome.degraded_sources == ()


@pytest.mark.asyncio
async def test_all_noise_query_skips_lexical_and_relies_on_vector(cache) -> None:
    vector = FakeVectorIndex([VectorHit(doc("v", "予約カレンダー"), 0.1)])
    lexical = FakeLexicalIndex([LexicalHit(doc("noise", "how can I"), 9.0)])
    service = _service(cache, vector=vector, lexical=lexical, provider=FakeEmbeddingProvider())

    outcome = await service.search("how can")

    assert outcome.keywords == ()
    assert lexical.queries == []
    assert vector.calls == 1
    assert [r.document_id for r in outcome.results] == ["v"]
    assert outcome.degraded_sources == ()


@pytest.mark.asyncio
async def test_repeated_query_is_served_from_cache(cache) -> None:
    lexical = FakeLexicalIndex(_lexical_hits())
    service = _service(cache, lexical=lexical)

    first = await service.search("教室管理")
    second = await service.search("  教室管理 ")

    assert first.cache_hit is False
    assert second.cache_hit is True
    assert len(lexical.queries) == 1
    assert [r.document_id for r in second.results] == [r.document_id for r in first.results]
    assert second.keywords == first.keywords


@pytest.mark.asyncio
async def test_different_config_does_not_share_cache_entry(cache) -> None:
    lexical = FakeLexicalIndex(_lexical_hits())
    service = _service(cache, lexical=lexical)

    await service.search("教室管理")
    outcome = await service.search("教室管理", {"top_k": 1})

    assert outcome.cache_hit is False
    assert len(outcome.results) == 1
    assert len(lexical.queries) == 2


@pytest.mark.asyncio
async def test_result_cache_can_be_disabled(cache) -> None:
    lexical = FakeLexicalIndex(_lexical_hits())
    service = _service(cache, lexical=lexical, use_result_cache=False)

    await service.search("教室管理")
    await service.search("教室管理")

    assert len(lexical.queries) == 2
    assert cache.keys(CACHE_NS_SEARCH) == []


@pytest.mark.asyncio
async def test_exclusions_from_overrides_apply(cache) -> None:
    service = _service(cache, lexical=FakeLexicalIndex(_lexical_hits()))

    outcome = await service.search("教室管理", {"exclude_title_patterns": ["ログイン*"]})

    assert [r.document_id for r in outcome.results] == ["doc1"]


@pytest.mark.asyncio
async def test_domain_registry_boosts_domain_titles(cache, registry) -> None:
    service = _service(cache, lexical=FakeLexicalIndex(_lexical_hits()), registry=registry)

    outcome = await service.search("教室管理")
    top = outcome.results[0]

    assert top.document_id == "doc1"
    assert top.score_breakdown["domain_adjustment"] == "boost"
    health = service.health()
    assert health["registry_initialized"] is True
    assert health["registry"]["term_count"] == 5


@pytest.mark.asyncio
async def test_empty_query_is_rejected(cache) -> None:
    service = _service(cache, lexical=FakeLexicalIndex())
    with pytest.raises(BadRequestError):
        await service.search("   ")


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [{"vector_weight": 0.9}, {"bogus": 1}, {"top_k": "many"}])
async def test_invalid_overrides_raise_configuration_error(cache, overrides) -> None:
    service = _service(cache, lexical=FakeLexicalIndex(_lexical_hits()))
    with pytest.raises(ConfigurationError):
        await service.search("教室管理", overrides)


@pytest.mark.asyncio
async def test_all_sources_failing_raises(cache) -> None:
    service = _service(
        cache,
        vector=FakeVectorIndex(error=RuntimeError("vector down")),
        lexical=FakeLexicalIndex(error=RuntimeError("fts down")),
        provider=FakeEmbeddingProvider(),
    )
    with pytest.raises(RetrievalUnavailableError):
        await service.search("教室管理")


def test_search_sync_runs_outside_event_loop(cache) -> None:
    service = _service(cache, lexical=FakeLexicalIndex(_lexical_hits()))
    outcome = service.search_sync("教室管理")
    assert outcome.results[0].document_id == "doc1"


def test_owned_cache_is_stopped_on_close() -> None:
    service = SearchService.build(lexical_index=FakeLexicalIndex(), base_config=FusionConfig(), s=_settings())

    assert service.cache is not None
    assert service.cache.cleanup_running
    service.close()
    assert not service.cache.cleanup_running


def test_injected_cache_is_left_running_on_close(cache) -> None:
    cache.start()
    service = _service(cache, lexical=FakeLexicalIndex())
    assert service.cache is cache
    service.close()
    assert cache.cleanup_running


def test_empty_injected_cache_is_used_as_is() -> None:
    injected = CacheManager(max_size=7, start_cleanup=False)
    try:
        assert len(injected) == 0
        service = _service(injected, lexical=FakeLexicalIndex())

        assert service.cache is injected
        assert service.health()["cache"]["max_size"] == 7
        assert service.pipeline.preprocessor.cache is injected
        service.close()
        assert not injected.cleanup_running
    finally:
        injected.stop()
