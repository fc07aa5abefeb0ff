# src/docqa_search/backend/cache/manager.py

"""
[职责] 进程内共享缓存：按 namespace 隔离的 TTL + 容量淘汰（lru/lfu/fifo）缓存，供 embedding/keyword/整体结果三层复用。
[边界] 唯一的共享可变状态；读写由互斥锁保护；调用方只拿到值的深拷贝；不做持久化。
[上游关系] services/search_service 在进程启动时构造一次并注入 pipeline；后台清理线程随实例启动、随 stop() 结束。
[下游关系] embedding client / preprocess / service 通过 get/set/get_or_compute 读写；health 路由读取 stats()。
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Literal, Optional, Tuple, TypeVar

from docqa_search.backend.utils.constants import CACHE_NAMESPACE_KEY
from docqa_search.backend.utils.errors import CacheError, ConfigurationError
from docqa_search.backend.utils.logging_ import get_logger, log_event


T = TypeVar("T")

EvictionPolicy = Literal["lru", "lfu", "fifo"]
EVICTION_POLICIES = ("lru", "lfu", "fifo")

logger = get_logger("cache.manager")


def make_cache_key(payload: Any) -> str:
    """
    [职责] 由任意 JSON-able payload 生成稳定摘要 key（sha256(canonical JSON)）。
    [边界] 不含 namespace；非 JSON 类型以 str() 兜底。
    [上游关系] service/embedding/preprocess 构造 key 时调用。
    [下游关系] CacheManager 以 `namespace:key` 存储。
    """
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_query_key(query: str) -> str:
    """keyword/embedding 层 key：query 去首尾空白并小写后取 sha256。"""
    return hashlib.sha256(str(query or "").strip().lower().encode("utf-8")).hexdigest()


@dataclass
class CacheEntry(Generic[T]):
    """
    [职责] 单条缓存记录（值 + 生命周期元数据）。
    [边界] 仅由 CacheManager 创建/修改；对外只暴露值的拷贝。
    """

    key: str
    namespace: str
    value: T
    created_at: float  # docstring: 创建时间（ms，单调时钟）
    ttl: int  # docstring: 存活时间（ms）
    hit_count: int = 0
    last_accessed_at: float = 0.0
    created_seq: int = 0  # docstring: 插入序号（fifo 与同刻并列时的稳定顺序）
    access_seq: int = 0  # docstring: 最近访问序号（lru 判定，避免时钟分辨率问题）

    def is_expired(self, now_ms: float) -> bool:
        return now_ms - self.created_at >= self.ttl


@dataclass
class NamespaceStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0

    def as_dict(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
        }


class CacheManager:
    """
    [职责] 命名空间化 TTL 缓存 + 容量上限淘汰 + 周期清理线程 + 命中统计。
    [边界]
    - 容量上限对全部 namespace 生效：插入新 key 时若已满，先清理过期项，仍满则按策略淘汰一条。
    - 后台清理每次只在删除单条记录期间持锁，不阻塞查询路径读写。
    - 内部失败统一抛 CacheError；调用方按 miss 处理。
    [上游关系] services 构造并持有；测试可注入 clock 并关闭后台线程。
    [下游关系] embedding/keyword/整体结果三层缓存；health 路由读取 stats()。
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        default_ttl_ms: int = 5 * 60 * 1000,
        eviction_policy: str = "lru",
        cleanup_interval_s: Optional[float] = 60.0,
        clock: Optional[Callable[[], float]] = None,
        start_cleanup: bool = True,
    ) -> None:
        if max_size <= 0:
            raise ConfigurationError(message="cache max_size must be positive", detail={"max_size": max_size})
        if default_ttl_ms <= 0:
            raise ConfigurationError(
                message="cache default ttl must be positive", detail={"default_ttl_ms": default_ttl_ms}
            )
        policy = str(eviction_policy or "lru").strip().lower()
        if policy not in EVICTION_POLICIES:
            raise ConfigurationError(
                message="unknown cache eviction policy",
                detail={"eviction_policy": eviction_policy, "allowed": list(EVICTION_POLICIES)},
            )

        self.max_size = int(max_size)
        self.default_ttl_ms = int(default_ttl_ms)
        self.eviction_policy: EvictionPolicy = policy  # type: ignore[assignment]
        self.cleanup_interval_s = cleanup_interval_s
        self._clock = clock or time.monotonic  # docstring: 秒级单调时钟（测试可注入）

        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._stats: Dict[str, NamespaceStats] = {}
        self._seq = 0

        self._stop_event = threading.Event()
        self._cleanup_thread: Optional[threading.Thread] = None
        if start_cleanup and cleanup_interval_s and cleanup_interval_s > 0:
            self.start()

    @classmethod
    def from_settings(cls, s: Optional[Any] = None, **overrides: Any) -> "CacheManager":
        """由 Settings 构造（进程启动时调用一次）。"""
        if s is None:
            from docqa_search.config import settings as s

        kwargs: Dict[str, Any] = {
            "max_size": s.DOCQA_CACHE_MAX_SIZE,
            "default_ttl_ms": s.DOCQA_CACHE_RESULT_TTL_MS,
            "eviction_policy": s.DOCQA_CACHE_EVICTION_POLICY,
            "cleanup_interval_s": s.DOCQA_CACHE_CLEANUP_INTERVAL_S,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    # --- lifecycle ---

    def start(self) -> None:
        """启动后台清理线程（已运行时为 no-op）。"""
        if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
            return
        self._stop_event.clear()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop,
            name="docqa-cache-cleanup",
            daemon=True,
        )
        self._cleanup_thread.start()

    def stop(self, *, timeout: float = 2.0) -> None:
        """停止后台清理线程；缓存内容保留。"""
        self._stop_event.set()
        thread = self._cleanup_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._cleanup_thread = None

    close = stop

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_thread is not None and self._cleanup_thread.is_alive()

    def __enter__(self) -> "CacheManager":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()

    def _cleanup_loop(self) -> None:
        interval = float(self.cleanup_interval_s or 60.0)
        while not self._stop_event.wait(interval):
            try:
                self.cleanup_expired()
            except CacheError as exc:
                log_event(logger, logging.WARNING, "cache.cleanup.failed", fields={"error": str(exc)})

    # --- core ops ---

    def _now_ms(self) -> float:
        return float(self._clock()) * 1000.0

    def _full_key(self, namespace: str, key: str) -> str:
        return f"{namespace}:{key}"

    def _ns_stats(self, namespace: str) -> NamespaceStats:
        stats = self._stats.get(namespace)
        if stats is None:
            stats = NamespaceStats()
            self._stats[namespace] = stats
        return stats

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def get(self, namespace: str, key: str) -> Optional[Any]:
        """
        [职责] 读取缓存值（命中则 hit_count+1 并刷新 last_accessed_at）。
        [边界] 过期项视为 miss 并立即删除；返回值为深拷贝。
        [上游关系] 各缓存层调用。
        [下游关系] None 表示 miss。
        """
        full_key = self._full_key(namespace, key)
        expired = False
        with self._lock:
            entry = self._entries.get(full_key)
            stats = self._ns_stats(namespace)
            if entry is not None and entry.is_expired(self._now_ms()):
                del self._entries[full_key]
                stats.expirations += 1
                expired = True
                entry = None
            if entry is None:
                stats.misses += 1
                value = None
            else:
                entry.hit_count += 1
                entry.last_accessed_at = self._now_ms()
                entry.access_seq = self._next_seq()
                stats.hits += 1
                value = self._copy(entry.value, namespace=namespace)

        if expired:
            log_event(logger, logging.DEBUG, "cache.expire", fields={CACHE_NAMESPACE_KEY: namespace})
        log_event(
            logger,
            logging.DEBUG,
            "cache.hit" if value is not None else "cache.miss",
            fields={CACHE_NAMESPACE_KEY: namespace},
        )
        return value

    def set(self, namespace: str, key: str, value: Any, *, ttl_ms: Optional[int] = None) -> None:
        """
        [职责] 写入缓存（已存在则覆盖并重置 TTL；新 key 且容量已满则先淘汰）。
        [边界] None 值不写入；写入的是深拷贝。
        """
        if value is None:
            return
        ttl = int(ttl_ms) if ttl_ms is not None else self.default_ttl_ms
        if ttl <= 0:
            raise CacheError(message="cache ttl must be positive", detail={"ttl_ms": ttl})
        full_key = self._full_key(namespace, key)
        stored = self._copy(value, namespace=namespace)

        evicted: List[Tuple[str, str]] = []
        with self._lock:
            now = self._now_ms()
            if full_key not in self._entries:
                evicted = self._make_room_locked(now)
            seq = self._next_seq()
            self._entries[full_key] = CacheEntry(
                key=full_key,
                namespace=namespace,
                value=stored,
                created_at=now,
                ttl=ttl,
                last_accessed_at=now,
                created_seq=seq,
                access_seq=seq,
            )
            self._ns_stats(namespace).sets += 1

        for ns, reason in evicted:
            log_event(logger, logging.DEBUG, f"cache.{reason}", fields={CACHE_NAMESPACE_KEY: ns})

    def _make_room_locked(self, now: float) -> List[Tuple[str, str]]:
        """持锁调用：保证插入后 size <= max_size。"""
        removed: List[Tuple[str, str]] = []
        if len(self._entries) < self.max_size:
            return removed

        for full_key, entry in list(self._entries.items()):
            if entry.is_expired(now):
                del self._entries[full_key]
                self._ns_stats(entry.namespace).expirations += 1
                removed.append((entry.namespace, "expire"))

        while len(self._entries) >= self.max_size:
            victim = min(self._entries.values(), key=self._victim_key)
            del self._entries[victim.key]
            self._ns_stats(victim.namespace).evictions += 1
            removed.append((victim.namespace, "evict"))
        return removed

    def _victim_key(self, entry: CacheEntry[Any]) -> Tuple[Any, ...]:
        if self.eviction_policy == "lfu":
            return (entry.hit_count, entry.access_seq)
        if self.eviction_policy == "fifo":
            return (entry.created_seq,)
        return (entry.access_seq,)

    def _copy(self, value: Any, *, namespace: str) -> Any:
        try:
            return copy.deepcopy(value)
        except Exception as exc:  # deepcopy 可因任意用户类型失败
            raise CacheError(
                message="cache value is not copyable",
                detail={CACHE_NAMESPACE_KEY: namespace, "type": type(value).__name__},
                cause=exc,
            ) from exc

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._entries.pop(self._full_key(namespace, key), None) is not None

    def get_or_compute(
        self,
        namespace: str,
        key: str,
        compute: Callable[[], T],
        *,
        ttl_ms: Optional[int] = None,
    ) -> T:
        """
        [职责] 读穿缓存：命中返回拷贝；miss 时调用 compute 并写入。
        [边界] compute 异常直接传播（不写缓存）；缓存自身异常按 miss 处理。
        """
        cached = self._safe_get(namespace, key)
        if cached is not None:
            return cached
        value = compute()
        self._safe_set(namespace, key, value, ttl_ms=ttl_ms)
        return value

    async def aget_or_compute(
        self,
        namespace: str,
        key: str,
        compute: Callable[[], Awaitable[T]],
        *,
        ttl_ms: Optional[int] = None,
    ) -> T:
        """get_or_compute 的异步版本（compute 为协程工厂）。"""
        cached = self._safe_get(namespace, key)
        if cached is not None:
            return cached
        value = await compute()
        self._safe_set(namespace, key, value, ttl_ms=ttl_ms)
        return value

    def _safe_get(self, namespace: str, key: str) -> Optional[Any]:
        try:
            return self.get(namespace, key)
        except CacheError as exc:
            log_event(
                logger,
                logging.WARNING,
                "cache.error.treated_as_miss",
                fields={CACHE_NAMESPACE_KEY: namespace, "error": exc.message},
            )
            return None

    def _safe_set(self, namespace: str, key: str, value: Any, *, ttl_ms: Optional[int]) -> None:
        try:
            self.set(namespace, key, value, ttl_ms=ttl_ms)
        except CacheError as exc:
            log_event(
                logger,
                logging.WARNING,
                "cache.error.write_skipped",
                fields={CACHE_NAMESPACE_KEY: namespace, "error": exc.message},
            )

    # --- maintenance ---

    def cleanup_expired(self) -> int:
        """
        [职责] 清理所有过期项，返回删除条数。
        [边界] 先快照候选 key，再逐条持锁删除（删除前复核是否仍过期）。
        """
        with self._lock:
            now = self._now_ms()
            candidates = [k for k, e in self._entries.items() if e.is_expired(now)]

        removed = 0
        for full_key in candidates:
            with self._lock:
                entry = self._entries.get(full_key)
                if entry is None or not entry.is_expired(self._now_ms()):
                    continue
                del self._entries[full_key]
                self._ns_stats(entry.namespace).expirations += 1
                removed += 1
        if removed:
            log_event(logger, logging.DEBUG, "cache.cleanup", fields={"removed": removed})
        return removed

    def invalidate_namespace(self, namespace: str) -> int:
        """删除某 namespace 下全部记录（统计保留）。"""
        prefix = f"{namespace}:"
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
        log_event(
            logger,
            logging.DEBUG,
            "cache.invalidate",
            fields={CACHE_NAMESPACE_KEY: namespace, "removed": len(keys)},
        )
        return len(keys)

    def clear(self) -> None:
        """清空全部记录与统计。"""
        with self._lock:
            self._entries.clear()
            self._stats.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def size(self) -> int:
        return len(self)

    def keys(self, namespace: Optional[str] = None) -> List[str]:
        """当前存活 key 列表（不含 namespace 前缀时按 namespace 过滤）。"""
        with self._lock:
            items = list(self._entries.values())
        if namespace is None:
            return [e.key for e in items]
        prefix = f"{namespace}:"
        return [e.key[len(prefix):] for e in items if e.namespace == namespace]

    def stats(self) -> Dict[str, Any]:
        """
        [职责] 返回统计快照（总体 + 按 namespace）。
        [边界] 返回新 dict；不包含缓存值。
        """
        with self._lock:
            per_ns = {ns: s.as_dict() for ns, s in self._stats.items()}
            size = len(self._entries)
            ns_sizes: Dict[str, int] = {}
            for entry in self._entries.values():
                ns_sizes[entry.namespace] = ns_sizes.get(entry.namespace, 0) + 1

        total = NamespaceStats()
        for s in per_ns.values():
            total.hits += s["hits"]
            total.misses += s["misses"]
            total.sets += s["sets"]
            total.evictions += s["evictions"]
            total.expirations += s["expirations"]
        for ns, ns_stats in per_ns.items():
            ns_stats["size"] = ns_sizes.get(ns, 0)

        return {
            "size": size,
            "max_size": self.max_size,
            "eviction_policy": self.eviction_policy,
            "cleanup_running": self.cleanup_running,
            **total.as_dict(),
            "namespaces": per_ns,
        }
