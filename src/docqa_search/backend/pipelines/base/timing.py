# src/docqa_search/backend/pipelines/base/timing.py

"""
[职责] 阶段计时：为检索 pipeline 收集 preprocess/embedding/vector/lexical/filter/fusion/format 等阶段耗时（ms）。
[边界] 不做分布式 tracing；不负责日志落地；并发阶段各自计时，total 不等于分阶段之和。
[上游关系] pipelines/search/pipeline.py 用 stage(...) 包裹各阶段。
[下游关系] SearchOutcome.timing_ms、查询汇总日志与 debug 响应。
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional


def _now_ms() -> float:
    """单调高精度时间戳（ms），只用于相对耗时。"""
    return time.perf_counter() * 1000.0


@dataclass
class TimingCollector:
    """
    [职责] 收集各阶段耗时并导出 dict[str, float]（ms）。
    [边界] 同一 stage 默认覆盖；并发协程各自包裹不同 stage key。
    [上游关系] pipeline 在每阶段用 stage(...) 包裹，或 add_ms(...) 写入。
    [下游关系] to_dict() 输出 timing_ms。
    """

    _stages_ms: Dict[str, float] = field(default_factory=dict)
    _start_ms: float = field(default_factory=_now_ms)

    def add_ms(self, key: str, ms: float, *, accumulate: bool = True) -> None:
        """写入某阶段耗时（负数截断为 0；空 key 忽略）。"""
        k = str(key).strip()
        if not k:
            return
        v = max(float(ms), 0.0)
        if accumulate:
            self._stages_ms[k] = self._stages_ms.get(k, 0.0) + v
        else:
            self._stages_ms[k] = v

    @contextmanager
    def stage(self, key: str, *, accumulate: bool = False) -> Iterator[None]:
        """
        [职责] 上下文管理器形式的阶段计时；异常退出同样记录耗时。
        [边界] 默认不累加，避免重复包裹叠加。
        """
        start = _now_ms()
        try:
            yield
        finally:
            self.add_ms(key, _now_ms() - start, accumulate=accumulate)

    def total_ms(self) -> float:
        return _now_ms() - self._start_ms

    def to_dict(self, *, include_total: bool = True, total_key: str = "total", ndigits: int = 3) -> Dict[str, float]:
        """导出可 JSON 序列化的 timing dict（ms，保留 ndigits 位小数）。"""
        out = {k: round(v, ndigits) for k, v in self._stages_ms.items()}
        if include_total:
            out[total_key] = round(float(self.total_ms()), ndigits)
        return out

    def get(self, key: str, default: Optional[float] = None) -> Optional[float]:
        return self._stages_ms.get(key, default)
