# src/docqa_search/backend/db/engine.py

"""
[职责] 数据库引擎与会话工厂：创建 AsyncEngine / AsyncSession，并提供 schema 初始化（含 FTS）。
[边界] 不包含 ORM Model 定义；不持有模块级全局引擎（由 services 在启动时创建并注入）；不负责迁移。
[上游关系] config.Settings 提供 DOCQA_DATABASE_URL；测试可传入临时 sqlite 路径。
[下游关系] db/fts 与 db/repo 通过 sessionmaker 读取文档；services 管理引擎生命周期。
"""

from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .base import Base


def resolve_db_url(override: str | None = None) -> str:
    """
    Resolve database URL.

    Priority:
        1) explicit override
        2) settings: DOCQA_DATABASE_URL (loads .env)
    """
    if override:
        return override
    from docqa_search.config import settings

    return str(settings.DOCQA_DATABASE_URL).strip()


def _ensure_sqlite_parent(url: str) -> None:
    """sqlite 文件库：确保父目录存在（内存库跳过）。"""
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return
    database = parsed.database or ""
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def create_engine(*, url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """
    Create AsyncEngine.

    NOTE:
      - For SQLite we rely on aiosqlite driver.
    """  # docstring: 生产/测试都可复用；测试可传入临时 sqlite 文件路径
    db_url = resolve_db_url(url)  # docstring: 数据库连接串
    _ensure_sqlite_parent(db_url)
    db_echo = echo if echo is not None else (os.getenv("SQL_ECHO", "0") == "1")  # docstring: SQL 打印开关

    return create_async_engine(
        db_url,
        echo=db_echo,
        future=True,
        pool_pre_ping=True,
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async sessionmaker."""  # docstring: 统一 expire_on_commit 行为
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db(engine: AsyncEngine, *, tokenizer: str | None = None) -> None:
    """
    Initialize database schema (create_all) and the FTS5 index.

    IMPORTANT:
      - Must import models to register tables in Base.metadata.
    """  # docstring: 本地/测试使用；生产环境由 ingestion 侧负责建表
    from . import models  # noqa: F401  # docstring: 强制注册 ORM 表
    from .fts import ensure_sqlite_fts

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = create_sessionmaker(engine)
    async with maker() as session:
        await ensure_sqlite_fts(session, tokenizer=tokenizer)

