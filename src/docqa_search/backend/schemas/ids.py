# src/docqa_search/backend/schemas/ids.py

"""
[职责] ID 契约层：统一 trace/request ID 的类型别名与生成策略。
[边界] 不依赖数据库 ORM；文档 ID 为稳定字符串，不在此约束。
[上游关系] 无（纯工具/契约层）。
[下游关系] schemas/pipelines/api 在创建/传递引用时使用。
"""

from __future__ import annotations

from typing import NewType
from uuid import uuid4


UUIDStr = NewType("UUIDStr", str)  # docstring: 统一 UUID 字符串类型（运行时仍为 str）

TraceId = UUIDStr  # docstring: 单次链路追踪ID
RequestId = UUIDStr  # docstring: 单次请求ID


def new_uuid() -> UUIDStr:
    """Generate UUID v4 as string."""
    return UUIDStr(str(uuid4()))


