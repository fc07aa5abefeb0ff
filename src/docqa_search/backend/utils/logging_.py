# src/docqa_search/backend/utils/logging_.py

"""
[职责] 定义结构化日志字段规范与统一 logger 获取方式，提供 JSON 格式化与安全输出 helper（截断/摘要）。
[边界] 不绑定具体日志后端；不记录原始 query 全文；不强制 trace_id 注入，仅提供工具。
[上游关系] services/pipelines/cache/api 通过 get_logger/log_event 组织日志上下文。
[下游关系] 日志后端（stdout/file）或监控系统消费结构化字段做检索与排障。
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from docqa_search.backend.utils.constants import TRACE_FIELD_KEYS


DEFAULT_LOGGER_NAME = "docqa_search"  # docstring: 统一 logger 根名称
DEFAULT_LOG_LEVEL = logging.INFO  # docstring: 默认日志级别
DEFAULT_MAX_TEXT_LEN = 80  # docstring: 安全文本预览长度

_LOG_RECORD_RESERVED = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "asctime",
}  # docstring: LogRecord 内置字段（不作为结构化额外字段）


class StructuredLogFormatter(logging.Formatter):
    """
    [职责] 将 LogRecord 转换为 JSON 字符串（含结构化字段）。
    [边界] 不保证字段全量；仅输出基础字段 + extra。
    [上游关系] configure_logging 创建 handler 后挂载。
    [下游关系] 日志收集系统解析 JSON 或 grep 关键字段。
    """

    def __init__(self, *, ensure_ascii: bool = False) -> None:
        super().__init__()
        self._ensure_ascii = ensure_ascii  # docstring: 日文 query 预览默认不转义

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),  # docstring: 统一 UTC 时间戳
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            k: v for k, v in record.__dict__.items() if k not in _LOG_RECORD_RESERVED and v is not None
        }  # docstring: 仅保留非空 extra 字段
        payload.update(extras)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)  # docstring: 异常堆栈文本
        if record.stack_info:
            payload["stack_info"] = record.stack_info

        return json.dumps(payload, ensure_ascii=self._ensure_ascii, default=str)


def configure_logging(
    *,
    logger_name: str = DEFAULT_LOGGER_NAME,
    level: Optional[int] = None,
    ensure_ascii: Optional[bool] = None,
) -> logging.Logger:
    """
    [职责] 配置统一的 base logger（JSON formatter）。
    [边界] 不触碰 root logger；重复调用不会重复挂载 handler。
    [上游关系] 进程入口（create_app）或测试初始化时调用；get_logger 自动调用。
    [下游关系] get_logger 复用已配置的 base logger。
    """
    from docqa_search.config import settings

    resolved_level = level
    if resolved_level is None:
        resolved_level = logging.getLevelName(str(settings.DOCQA_LOG_LEVEL).upper())
        if not isinstance(resolved_level, int):
            resolved_level = DEFAULT_LOG_LEVEL  # docstring: 非法级别名回退 INFO
    resolved_ascii = settings.DOCQA_LOG_ENSURE_ASCII if ensure_ascii is None else ensure_ascii

    logger = logging.getLogger(logger_name)
    has_handler = any(
        isinstance(h, logging.StreamHandler) and getattr(h, "name", "") == "structured_json" for h in logger.handlers
    )
    if not has_handler:
        logger.setLevel(resolved_level)
        handler = logging.StreamHandler()
        handler.name = "structured_json"  # docstring: 标记 handler，避免重复挂载
        handler.setFormatter(StructuredLogFormatter(ensure_ascii=bool(resolved_ascii)))
        logger.addHandler(handler)
        logger.propagate = False  # docstring: 避免重复向 root 传播
    elif level is not None:
        logger.setLevel(level)  # docstring: 显式级别覆盖
    return logger


def get_logger(name: Optional[str] = None, *, level: Optional[int] = None) -> logging.Logger:
    """
    [职责] 获取项目统一 logger（自动确保 base logger 已配置）。
    [边界] 不强制覆写外部 logging 配置；仅保证本项目 logger 可用。
    [上游关系] 各模块在 import 时调用获取 logger。
    [下游关系] logger 输出 JSON 格式结构化日志。
    """
    configure_logging()
    full_name = name or DEFAULT_LOGGER_NAME
    if name and not name.startswith(DEFAULT_LOGGER_NAME):
        full_name = f"{DEFAULT_LOGGER_NAME}.{name}"  # docstring: 统一挂载在项目根 logger 下
    logger = logging.getLogger(full_name)
    if level is not None:
        logger.setLevel(level)
    return logger


def build_log_fields(
    *,
    context: Optional[Any] = None,
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
    query_hash: Optional[str] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    [职责] 统一构建结构化日志字段（trace/request/query_hash 等）。
    [边界] 不生成缺失 trace_id；不校验字段合法性。
    [上游关系] log_event 或调用方直接传入 ctx/显式字段。
    [下游关系] logger.extra 供 StructuredLogFormatter 输出。
    """
    fields: Dict[str, Any] = {}
    if context is not None:
        fields.update(_extract_fields_from_context(context))

    explicit = {"trace_id": trace_id, "request_id": request_id, "query_hash": query_hash}
    for key, value in explicit.items():
        if value is not None:
            fields[key] = str(value)

    if extra:
        for key, value in extra.items():
            if value is not None:
                fields[key] = value
    return fields


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    context: Optional[Any] = None,
    fields: Optional[Mapping[str, Any]] = None,
    exc_info: Optional[Any] = None,
) -> None:
    """
    [职责] 统一记录结构化日志（可自动附加 trace 字段）。
    [边界] 不处理业务语义；级别未启用时不构建字段。
    [上游关系] services/pipelines/cache 在关键节点调用。
    [下游关系] StructuredLogFormatter 输出 JSON。
    """
    if not logger.isEnabledFor(level):
        return
    extra = build_log_fields(context=context, extra=fields)
    logger.log(level, message, extra=extra, exc_info=exc_info)


def truncate_text(text: Optional[str], *, max_len: int = DEFAULT_MAX_TEXT_LEN) -> Optional[str]:
    """截断长文本（避免记录原始 query 全文）。"""
    if text is None:
        return None
    s = str(text)
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]}...(truncated)"


def hash_text(text: Optional[str]) -> Optional[str]:
    """生成文本 sha256 摘要（用于日志定位与去重，不作为安全认证）。"""
    if text is None:
        return None
    s = str(text)
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _extract_fields_from_context(context: Any) -> Dict[str, Any]:
    """
    [职责] 从上下文对象/映射中提取标准 trace 字段。
    [边界] 仅读取 TRACE_FIELD_KEYS；不解析嵌套对象。
    [上游关系] build_log_fields 调用。
    [下游关系] 结构化日志字段。
    """
    out: Dict[str, Any] = {}
    for key in TRACE_FIELD_KEYS:
        if isinstance(context, Mapping):
            value = context.get(key)
        else:
            value = getattr(context, key, None)
        if value is not None:
            out[key] = str(value)
    return out
