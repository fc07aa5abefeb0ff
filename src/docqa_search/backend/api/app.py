# src/docqa_search/backend/api/app.py

"""
[职责] FastAPI 应用工厂：注册 middleware/异常处理器/路由，并在 lifespan 中持有 SearchService。
[边界] 不构造索引/provider（由调用方传入 service 或 service_factory）；关闭时调用 service.close()。
[上游关系] uvicorn/脚本/测试调用 create_app。
[下游关系] routers 通过 deps.get_search_service 读取 app.state.search_service。
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI

from docqa_search.backend.api.errors import install_exception_handlers
from docqa_search.backend.api.middleware import TraceContextMiddleware
from docqa_search.backend.api.routers import health, search
from docqa_search.backend.services.search_service import SearchService
from docqa_search.backend.utils.logging_ import configure_logging


def create_app(
    service: Optional[SearchService] = None,
    *,
    service_factory: Optional[Callable[[], SearchService]] = None,
) -> FastAPI:
    """
    [职责] 构建应用；service 与 service_factory 二选一（factory 在 startup 时调用）。
    [边界] 二者皆缺时抛 ValueError。
    """
    if service is None and service_factory is None:
        raise ValueError("service or service_factory is required")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        svc = service if service is not None else service_factory()  # type: ignore[misc]
        app.state.search_service = svc
        try:
            yield
        finally:
            svc.close()

    app = FastAPI(title="docqa-search", version="0.1.0", lifespan=lifespan)
    app.add_middleware(TraceContextMiddleware)
    install_exception_handlers(app)
    app.include_router(search.router)
    app.include_router(health.router)
    return app
