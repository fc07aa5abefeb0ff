# playground/fastapi_gate/routers/test_search_router_gate.py

"""
[职责] Search/Health router gate：验证 POST /search 的请求映射、响应结构、debug 封装、trace header 透传与错误响应。
[边界] SearchService 使用假索引构造；通过 dependency_overrides 注入，不启动 lifespan。
[上游关系] backend/api/routers/search.py + health.py + middleware/errors。
[下游关系] 前端/调用方依赖此 HTTP 契约。
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import FakeLexicalIndex, doc
from docqa_search.backend.api.app import create_app
from docqa_search.backend.api.deps import get_search_service
from docqa_search.backend.api.errors import install_exception_handlers
from docqa_search.backend.api.middleware import TraceContextMiddleware
from docqa_search.backend.api.routers.health import router as health_router
from docqa_search.backend.api.routers.search import router as search_router
from docqa_search.backend.kb.interfaces import LexicalHit
from docqa_search.backend.schemas.ids import new_uuid
from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.services.search_service import SearchService
from docqa_search.config import Settings


pytestmark = pytest.mark.fastapi_gate


def _service(cache, lexical: FakeLexicalIndex) -> SearchService:
    return SearchService.build(
        lexical_index=lexical,
        cache=cache,
        base_config=FusionConfig(),
        s=Settings(DOCQA_RETRIEVAL_TIMEOUT_S=0.5),
    )


def _app(service) -> FastAPI:
    app = FastAPI()
    app.add_middleware(TraceContextMiddleware)  # docstring: inject trace/request headers
    install_exception_handlers(app)
    app.include_router(search_router)
    app.include_router(health_router)
    app.dependency_overrides[get_search_service] = lambda: service  # docstring: override service dep
    return app


def _lexical() -> FakeLexicalIndex:
    return FakeLexicalIndex(
        [
            LexicalHit(doc("doc1", "教室管理機能の詳細"), 15.5),
            LexicalHit(doc("doc2", "ログイン機能について"), 8.2),
        ]
    )


@pytest.mark.asyncio
async def test_search_returns_ranked_hits_with_trace_headers(cache) -> None:
    app = _app(_service(cache, _lexical()))
    trace_id, request_id = str(new_uuid()), str(new_uuid())

    transport = ASGITransport(app=app)  # docstring: ASGI transport for httpx
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/search",
            json={"query": "教室管理の方法"},
            headers={"x-trace-id": trace_id, "x-request-id": request_id},
        )

    assert resp.status_code == 200
    assert resp.headers["x-trace-id"] == trace_id
    assert resp.headers["x-request-id"] == request_id
    data = resp.json()
    assert data["query"] == "教室管理の方法"
    assert [(h["document_id"], h["final_score"]) for h in data["hits"]] == [("doc1", 75), ("doc2", 41)]
    assert data["hits"][0]["source_kinds"] == ["lexical", "title-exact"]
    assert "lexical" in data["hits"][0]["score_breakdown"]
    assert data["degraded_sources"] == []
    assert data["cache_hit"] is False
    assert data["debug"] is None


@pytest.mark.asyncio
async def test_debug_envelope_and_overrides(cache) -> None:
    app = _app(_service(cache, _lexical()))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post(
            "/search?debug=true",
            json={"query": "教室管理", "top_k": 1, "exclude_labels": ["none"]},
        )

    assert resp.status_code == 200
    data = resp.json()
    assert len(data["hits"]) == 1
    debug = data["debug"]
    assert debug["trace_id"] == resp.headers["x-trace-id"]
    assert debug["keywords"] == ["教室管理"]
    assert "fusion" in debug["timing_ms"]


@pytest.mark.asyncio
async def test_second_request_hits_result_cache(cache) -> None:
    lexical = _lexical()
    app = _app(_service(cache, lexical))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/search", json={"query": "教室管理"})
        second = await client.post("/search", json={"query": "教室管理"})

    assert first.json()["cache_hit"] is False
    assert second.json()["cache_hit"] is True
    assert second.json()["hits"] == first.json()["hits"]
    assert len(lexical.queries) == 1


@pytest.mark.asyncio
async def test_domain_errors_map_to_error_response(cache) -> None:
    app = _app(_service(cache, _lexical()))
    trace_id = str(new_uuid())

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        blank = await client.post("/search", json={"query": "   "}, headers={"x-trace-id": trace_id})

    assert blank.status_code == 400
    assert blank.headers["x-trace-id"] == trace_id
    body = blank.json()
    assert body["error"]["code"] == "bad_request"
    assert body["error"]["trace_id"] == trace_id


@pytest.mark.asyncio
async def test_unavailable_sources_return_503(cache) -> None:
    app = _app(_service(cache, FakeLexicalIndex(error=RuntimeError("fts down"))))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/search", json={"query": "教室管理"})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "search.retrieval_unavailable"


@pytest.mark.asyncio
async def test_request_shape_is_validated(cache) -> None:
    app = _app(_service(cache, _lexical()))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        unknown = await client.post("/search", json={"query": "x", "weights": {}})
        bad_top_k = await client.post("/search", json={"query": "x", "top_k": 0})

    assert unknown.status_code == 422
    assert bad_top_k.status_code == 422


@pytest.mark.asyncio
async def test_unhandled_errors_become_internal_error() -> None:
    class _ExplodingService:
        async def search(self, *args, **kwargs):
            raise RuntimeError("boom")

    app = _app(_ExplodingService())

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/search", json={"query": "x"})

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"


@pytest.mark.asyncio
async def test_health_reports_cache_state(cache) -> None:
    app = _app(_service(cache, _lexical()))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        stopped = (await client.get("/health")).json()
        cache.start()
        running = (await client.get("/health")).json()

    assert stopped["status"] == "degraded"
    assert running["status"] == "ok"
    assert running["cache"]["max_size"] == 100
    assert running["registry_initialized"] is False
    assert running["version"] == {"api": "v1"}


@pytest.mark.asyncio
async def test_create_app_wires_service_through_lifespan(cache) -> None:
    service = _service(cache, _lexical())
    app = create_app(service)

    async with app.router.lifespan_context(app):
        assert app.state.search_service is service
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/search", json={"query": "教室管理"})
    assert resp.status_code == 200
    assert resp.headers["x-trace-id"]


def test_create_app_requires_a_service() -> None:
    with pytest.raises(ValueError):
        create_app()
