# src/docqa_search/backend/pipelines/search/embedding.py

"""
[职责] embedding client 适配层：query 向量的缓存快路径 + provider 调用重试（指数退避）+ 批量超限二分 + L2 归一化。
[边界] 不实现 provider 本身；重试只针对可重试 ProviderError；重试耗尽抛 ProviderError，由 pipeline 降级为缺失向量信号。
[上游关系] pipeline 调用 embed_query；批量场景调用 embed_batch。
[下游关系] retriever 的向量路径使用返回向量；CacheManager `embedding` namespace 存储归一化向量。
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

import numpy as np
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from docqa_search.backend.cache.manager import CacheManager, normalize_query_key
from docqa_search.backend.kb.interfaces import BatchEmbeddingProvider, EmbeddingProvider
from docqa_search.backend.utils.constants import CACHE_NS_EMBEDDING
from docqa_search.backend.utils.errors import ProviderError
from docqa_search.backend.utils.logging_ import get_logger, log_event


T = TypeVar("T")

logger = get_logger("pipelines.search.embedding")


def l2_normalize(vector: Sequence[float]) -> List[float]:
    """
    [职责] L2 归一化（numpy）。
    [边界] 空向量 / 零向量 / 含 NaN/inf 视为 provider 返回异常，抛 ProviderError（不重试）。
    """
    arr = np.asarray(list(vector), dtype=np.float64).reshape(-1)
    if arr.size == 0 or not np.all(np.isfinite(arr)):
        raise ProviderError(message="provider returned an invalid embedding", provider="embedding", retryable=False)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        raise ProviderError(message="provider returned a zero embedding", provider="embedding", retryable=False)
    return (arr / norm).tolist()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable and not exc.payload_too_large


class EmbeddingClient:
    """
    [职责] 包装 EmbeddingProvider：缓存 → 重试 → 归一化。
    [边界] 非 ProviderError 异常统一包装为可重试 ProviderError；payload_too_large 不重试（单条直接抛出，批量二分）。
    [上游关系] services 构造一次（注入 provider 与 CacheManager）。
    [下游关系] pipeline.embedding 阶段。
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        cache: Optional[CacheManager] = None,
        cache_ttl_ms: Optional[int] = None,
        max_retries: int = 3,
        initial_delay_s: float = 0.5,
        max_delay_s: float = 8.0,
        model_tag: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.cache_ttl_ms = cache_ttl_ms
        self.max_retries = max(int(max_retries), 0)
        self.initial_delay_s = max(float(initial_delay_s), 0.0)
        self.max_delay_s = max(float(max_delay_s), self.initial_delay_s)
        self.model_tag = model_tag or str(getattr(provider, "model_name", "") or type(provider).__name__)

    @classmethod
    def from_settings(cls, provider: EmbeddingProvider, *, cache: Optional[CacheManager] = None, s: Any = None):
        if s is None:
            from docqa_search.config import settings as s

        return cls(
            provider,
            cache=cache,
            cache_ttl_ms=s.DOCQA_CACHE_EMBEDDING_TTL_MS,
            max_retries=s.DOCQA_EMBED_MAX_RETRIES,
            initial_delay_s=s.DOCQA_EMBED_INITIAL_DELAY_S,
            max_delay_s=s.DOCQA_EMBED_MAX_DELAY_S,
        )

    def cache_key(self, text: str) -> str:
        return f"{self.model_tag}:{normalize_query_key(text)}"

    async def embed_query(self, text: str) -> List[float]:
        """
        [职责] query 向量：先查 `embedding` 缓存，miss 时调用 provider（带重试）并归一化后写入缓存。
        [边界] 缓存异常视为 miss；provider 重试耗尽抛 ProviderError。
        """
        if self.cache is None:
            return await self._embed_uncached(text)
        return await self.cache.aget_or_compute(
            CACHE_NS_EMBEDDING,
            self.cache_key(text),
            lambda: self._embed_uncached(text),
            ttl_ms=self.cache_ttl_ms,
        )

    async def _embed_uncached(self, text: str) -> List[float]:
        raw = await self._with_retry(lambda: self.provider.embed(text), op="embed")
        return l2_normalize(raw)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        [职责] 批量 embedding：provider 支持 embed_batch 时整批调用，payload 超限则二分递归。
        [边界] 返回顺序与输入一致；单条超限直接抛 ProviderError。
        """
        items = list(texts)
        if not items:
            return []
        if not isinstance(self.provider, BatchEmbeddingProvider):
            return [await self._embed_uncached(t) for t in items]
        batch_fn = self.provider.embed_batch

        try:
            raw = await self._with_retry(lambda: batch_fn(items), op="embed_batch")
        except ProviderError as exc:
            if not exc.payload_too_large or len(items) <= 1:
                raise
            mid = len(items) // 2
            log_event(
                logger,
                logging.INFO,
                "embedding.batch.bisect",
                fields={"batch_size": len(items), "left": mid, "right": len(items) - mid},
            )
            left = await self.embed_batch(items[:mid])
            right = await self.embed_batch(items[mid:])
            return left + right

        if len(raw) != len(items):
            raise ProviderError(
                message="provider returned a mismatched batch",
                provider="embedding",
                detail={"expected": len(items), "got": len(raw)},
                retryable=False,
            )
        return [l2_normalize(v) for v in raw]

    async def _with_retry(self, call: Callable[[], Awaitable[T]], *, op: str) -> T:
        """
        [职责] tenacity 指数退避重试（最多 max_retries 次重试）。
        [边界] 仅重试 retryable 且非 payload_too_large 的 ProviderError；耗尽后抛出最后一次 ProviderError。
        """

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome is not None else None
            log_event(
                logger,
                logging.WARNING,
                "embedding.retry",
                fields={
                    "op": op,
                    "attempt": state.attempt_number,
                    "max_retries": self.max_retries,
                    "error": type(exc).__name__ if exc is not None else None,
                },
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.initial_delay_s, min=self.initial_delay_s, max=self.max_delay_s),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    return await call()
                except ProviderError:
                    raise
                except Exception as exc:
                    raise ProviderError(
                        message="embedding provider call failed",
                        provider=self.model_tag,
                        detail={"op": op, "error_type": type(exc).__name__},
                        cause=exc,
                    ) from exc
        raise ProviderError(message="embedding retries exhausted", provider=self.model_tag)  # pragma: no cover

