# src/docqa_search/backend/utils/errors.py

"""
[职责] 统一领域错误合同（error_code/message/detail/cause）与检索域错误分类（provider/configuration/score/cache/unavailable）。
[边界] 不依赖 FastAPI/HTTPException；不记录日志；仅提供错误壳、校验与 HTTP 映射提示（http_status/retryable）。
[上游关系] config/cache/pipelines/services 抛出 DomainError 子类；调用方负责补充 trace_id 等上下文字段。
[下游关系] api/errors.py 使用本模块将异常映射为 ErrorResponse 与 HTTP status；pipeline 按类型决定降级或传播。
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional, Tuple


ErrorDetail = Dict[str, Any]  # docstring: 错误细节类型（必须 JSON-safe）

ERROR_CODE_PATTERN_DOT = re.compile(r"^[a-z][a-z0-9]*(?:\.[a-z0-9_]+)+$")  # docstring: area.reason 规范

STANDARD_ERROR_CODES = {
    "bad_request",
    "not_found",
    "pipeline_error",
    "external_dependency",
    "internal_error",
}  # docstring: HTTP 层通用错误码集合

ERROR_HTTP_STATUS_BY_CODE = {
    "bad_request": 400,
    "not_found": 404,
    "pipeline_error": 500,
    "external_dependency": 503,
    "internal_error": 500,
    "search.configuration": 400,
    "search.provider": 503,
    "search.retrieval_unavailable": 503,
    "search.score_computation": 500,
    "search.cache": 500,
}  # docstring: 错误码 -> HTTP status

ERROR_RETRYABLE_BY_CODE = {
    "external_dependency": True,
    "search.provider": True,
    "search.retrieval_unavailable": True,
}  # docstring: 错误码 -> retryable 默认值（未列出即 False）

INTERNAL_ERROR_CODE = "internal_error"
INTERNAL_ERROR_MESSAGE = "internal error"


def is_valid_error_code(error_code: str) -> bool:
    """校验错误码是否属于通用错误码或满足 area.reason 规范。"""
    if not error_code:
        return False
    if error_code in STANDARD_ERROR_CODES:
        return True
    return bool(ERROR_CODE_PATTERN_DOT.match(error_code))


def ensure_json_safe_detail(detail: ErrorDetail) -> ErrorDetail:
    """
    [职责] 校验 detail 是否可 JSON 序列化。
    [边界] detail 必须是 dict；不做降级或裁剪。
    [上游关系] DomainError 初始化时调用。
    [下游关系] api/errors.py 可直接将 detail 写入 ErrorResponse.detail。
    """
    if not isinstance(detail, dict):
        raise ValueError("detail must be a dict")
    try:
        json.dumps(detail)
    except TypeError as exc:
        raise ValueError("detail must be JSON-serializable") from exc
    return detail


class DomainError(Exception):
    """
    [职责] 领域错误最小合同：统一 error_code/message/detail/cause，并提供 http_status/retryable 提示。
    [边界] 仅表达语义，不承担日志、告警、HTTP 输出。
    [上游关系] cache/pipelines/services 抛出本错误；必要时携带 cause。
    [下游关系] api/errors.py 根据本错误映射 HTTP status 与 ErrorResponse。
    """

    default_code = INTERNAL_ERROR_CODE
    default_message = INTERNAL_ERROR_MESSAGE

    def __init__(
        self,
        *,
        error_code: Optional[str] = None,
        message: Optional[str] = None,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[BaseException] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        code = error_code or self.default_code
        if not is_valid_error_code(code):
            raise ValueError(f"invalid error_code: {code}")  # docstring: 防止不规范错误码泄露
        normalized_detail = ensure_json_safe_detail(dict(detail or {}))
        msg = message or self.default_message

        super().__init__(msg)
        self.error_code = code  # docstring: 稳定错误码
        self.message = msg  # docstring: 用户可读错误信息
        self.detail = normalized_detail  # docstring: JSON-safe 细节
        self.cause = cause  # docstring: 上游异常引用
        self.http_status = http_status if http_status is not None else ERROR_HTTP_STATUS_BY_CODE.get(code, 500)
        self.retryable = retryable if retryable is not None else ERROR_RETRYABLE_BY_CODE.get(code, False)

        if cause is not None:
            self.__cause__ = cause  # docstring: 保留异常链路

    def to_dict(self) -> Dict[str, Any]:
        """输出 ErrorResponse.error 结构（不包含 trace_id 与 cause）。"""
        return {
            "code": self.error_code,
            "message": self.message,
            "detail": self.detail,
        }


class BadRequestError(DomainError):
    """400：请求参数不合法（如空 query）。"""

    default_code = "bad_request"
    default_message = "bad request"


class ConfigurationError(DomainError):
    """
    [职责] 表达检索配置缺失/非法（权重、阈值、top_k 等），调用时立即失败。
    [边界] 不尝试修正配置；detail 中给出字段名与取值。
    [上游关系] FusionConfig 校验与 pipeline 入口抛出。
    [下游关系] api/errors.py 映射为 400。
    """

    default_code = "search.configuration"
    default_message = "invalid search configuration"


class ProviderError(DomainError):
    """
    [职责] 表达 embedding provider / 向量索引 / 词法索引调用失败或超时。
    [边界] payload_too_large 仅用于批量 embedding 的二分重试判定。
    [上游关系] kb 适配器与 embedding client 抛出。
    [下游关系] embedding client 重试；retriever 降级为缺失信号。
    """

    default_code = "search.provider"
    default_message = "provider call failed"

    def __init__(
        self,
        *,
        message: Optional[str] = None,
        provider: str = "unknown",
        payload_too_large: bool = False,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[BaseException] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        merged = {"provider": provider, "payload_too_large": bool(payload_too_large)}
        merged.update(detail or {})
        super().__init__(message=message, detail=merged, cause=cause, retryable=retryable)
        self.provider = provider
        self.payload_too_large = bool(payload_too_large)


class RetrievalUnavailableError(DomainError):
    """503：所有检索信号源均失败，无法产出任何候选。"""

    default_code = "search.retrieval_unavailable"
    default_message = "all retrieval sources are unavailable"


class ScoreComputationError(DomainError):
    """分数计算出现 NaN/inf/缺失；pipeline 内部捕获并回退为距离分数，不向外传播。"""

    default_code = "search.score_computation"
    default_message = "score computation failed"


class CacheError(DomainError):
    """缓存读写失败；调用方视为 cache miss，不影响查询。"""

    default_code = "search.cache"
    default_message = "cache operation failed"


def to_http_error(
    error: BaseException,
    *,
    trace_id: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    """
    [职责] 将异常转换为 HTTP status + ErrorResponse payload（不耦合 FastAPI）。
    [边界] 不注入 request_id；不做日志记录。
    [上游关系] api/errors.py 捕获异常后调用。
    [下游关系] routers 返回统一 ErrorResponse。
    """
    if isinstance(error, DomainError):
        status_code = error.http_status
        payload: Dict[str, Any] = {"error": error.to_dict()}
    else:
        status_code = ERROR_HTTP_STATUS_BY_CODE[INTERNAL_ERROR_CODE]
        payload = {
            "error": {
                "code": INTERNAL_ERROR_CODE,
                "message": INTERNAL_ERROR_MESSAGE,
                "detail": {},
            }
        }  # docstring: 未知异常降级为 internal_error

    if trace_id:
        payload["error"]["trace_id"] = trace_id
    return status_code, payload
