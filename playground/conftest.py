# playground/conftest.py

"""
[职责] gate tests 共享夹具：假 embedding provider、可控失败/超时的假索引、内存 metadata store、领域词表、独立 CacheManager、临时 SQLite 引擎。
[边界] 不访问网络/外部服务；每个测试独立实例。
[上游关系] playground/*_gate/test_*.py。
[下游关系] 被测模块通过构造注入使用这些夹具。
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator, Dict, Iterator, List, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docqa_search.backend.cache.manager import CacheManager
from docqa_search.backend.db.engine import create_engine, create_sessionmaker, init_db
from docqa_search.backend.kb.domain_keywords import DomainKeywordRegistry, build_registry
from docqa_search.backend.kb.interfaces import LexicalHit, VectorHit
from docqa_search.backend.kb.memory_index import InMemoryMetadataStore
from docqa_search.backend.schemas.documents import DocumentRef
from docqa_search.backend.utils.errors import ProviderError


class FakeClock:
    """可手动推进的秒级时钟（注入 CacheManager）。"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class FakeEmbeddingProvider:
    """
    按文本查表返回向量（未登记文本返回固定向量）；可配置前 N 次调用失败与批量上限。
    """

    model_name = "fake-embed"

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        *,
        fail_times: int = 0,
        retryable: bool = True,
        max_batch: Optional[int] = None,
    ) -> None:
        self.vectors = dict(vectors or {})
        self.fail_times = fail_times
        self.retryable = retryable
        self.max_batch = max_batch
        self.calls = 0
        self.batch_sizes: List[int] = []

    def _vector(self, text: str) -> List[float]:
        return list(self.vectors.get(text, [1.0, 0.0, 0.0]))

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ProviderError(message="transient", provider="fake", retryable=self.retryable)
        return self._vector(text)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls += 1
        self.batch_sizes.append(len(texts))
        if self.max_batch is not None and len(texts) > self.max_batch:
            raise ProviderError(message="payload too large", provider="fake", payload_too_large=True)
        return [self._vector(t) for t in texts]


class FakeVectorIndex:
    """返回预置命中；可配置延迟（模拟超时）与异常。"""

    def __init__(self, hits: Sequence[VectorHit] = (), *, delay_s: float = 0.0, error: Optional[Exception] = None):
        self.hits = list(hits)
        self.delay_s = delay_s
        self.error = error
        self.calls = 0

    async def search(self, vector: Sequence[float], limit: int) -> List[VectorHit]:
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.hits[:limit]


class FakeLexicalIndex:
    def __init__(self, hits: Sequence[LexicalHit] = (), *, delay_s: float = 0.0, error: Optional[Exception] = None):
        self.hits = list(hits)
        self.delay_s = delay_s
        self.error = error
        self.queries: List[str] = []

    async def search(self, query: str, limit: int) -> List[LexicalHit]:
        self.queries.append(query)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.hits[:limit]


def doc(doc_id: str, title: str, content: str = "") -> DocumentRef:
    return DocumentRef(id=doc_id, title=title, content=content)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(fake_clock: FakeClock) -> Iterator[CacheManager]:
    """每个测试独立的 CacheManager（不启动后台线程，注入假时钟）。"""
    manager = CacheManager(max_size=100, default_ttl_ms=60_000, clock=fake_clock, start_cleanup=False)
    try:
        yield manager
    finally:
        manager.stop()


@pytest.fixture
def registry() -> DomainKeywordRegistry:
    return build_registry(
        {
            "domainNames": ["教室管理", "ユーザー管理"],
            "functionNames": ["ログイン", "予約"],
            "systemTerms": ["カレンダー"],
        }
    )


@pytest.fixture
def metadata_store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest_asyncio.fixture
async def sessionmaker(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """临时 SQLite 文件 + create_all + FTS5（trigram）。"""
    engine = create_engine(url=f"sqlite+aiosqlite:///{(tmp_path / 'gate.db').as_posix()}", echo=False)
    await init_db(engine, tokenizer="trigram")
    try:
        yield create_sessionmaker(engine)
    finally:
        await engine.dispose()
