# src/docqa_search/backend/pipelines/base/context.py

"""
[职责] PipelineContext：单次检索的运行上下文（trace 字段 + 计时 + 阶段错误记录 + debug 开关）。
[边界] 不持有跨请求状态；不持有索引/缓存等依赖（由 SearchPipeline 构造时注入）；只做聚合与透传。
[上游关系] services/api 为每次查询构造（可注入上游 trace_id/request_id）。
[下游关系] pipeline 各阶段写 timing/errors；log_event 从 ctx 提取 trace 字段；响应输出 degraded_sources 与 timing。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from docqa_search.backend.schemas.ids import UUIDStr, new_uuid
from docqa_search.backend.utils.constants import TIMING_TOTAL_KEY
from docqa_search.backend.utils.errors import DomainError

from .timing import TimingCollector


@dataclass
class PipelineContext:
    """
    [职责] 为单次查询提供统一元数据（trace/request/query_hash）、timing 与降级记录。
    [边界] errors 只记录可降级失败（path 超时/异常、评分回退、缓存错误）；致命错误直接抛出。
    [上游关系] SearchService.search 创建。
    [下游关系] pipeline 写入；SearchOutcome 读取。
    """

    trace_id: UUIDStr = field(default_factory=new_uuid)  # docstring: 单次链路追踪ID
    request_id: UUIDStr = field(default_factory=new_uuid)  # docstring: 单次请求ID（可由上游注入覆盖）
    query_hash: Optional[str] = None  # docstring: query sha256（日志不记录原文）

    timing: TimingCollector = field(default_factory=TimingCollector)
    errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # docstring: stage -> 错误摘要
    degraded_sources: List[str] = field(default_factory=list)  # docstring: 失败/超时的信号源
    debug: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        *,
        trace_id: Optional[str] = None,
        request_id: Optional[str] = None,
        query_hash: Optional[str] = None,
        debug: bool = False,
    ) -> "PipelineContext":
        return cls(
            trace_id=UUIDStr(trace_id) if trace_id else new_uuid(),
            request_id=UUIDStr(request_id) if request_id else new_uuid(),
            query_hash=query_hash,
            debug=bool(debug),
        )

    def record_error(self, stage: str, error: BaseException, **extra: Any) -> None:
        """
        [职责] 记录可降级阶段错误（同一 stage 覆盖）。
        [边界] 只保存错误类型/码/消息，不保存异常对象。
        """
        summary: Dict[str, Any] = {"type": type(error).__name__, "message": str(error) or type(error).__name__}
        if isinstance(error, DomainError):
            summary["code"] = error.error_code
        summary.update({k: v for k, v in extra.items() if v is not None})
        self.errors[str(stage)] = summary

    def mark_degraded(self, source: str) -> None:
        if source not in self.degraded_sources:
            self.degraded_sources.append(source)

    def timing_ms(self, *, include_total: bool = True) -> Dict[str, float]:
        return self.timing.to_dict(include_total=include_total, total_key=TIMING_TOTAL_KEY)
