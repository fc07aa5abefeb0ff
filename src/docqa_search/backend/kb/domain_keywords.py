# src/docqa_search/backend/kb/domain_keywords.py

"""
[职责] 领域关键词注册表：加载领域名/功能名/操作名/系统用语/关联词，供预处理与领域加权使用。
[边界] 进程级只读状态；initialize() 幂等（首次成功后再调用为 no-op）；不从网络加载。
[上游关系] services 在启动时调用 initialize()（或 load_json）；测试直接传入 dict。
[下游关系] preprocess 识别领域词；fusion 计算领域加权与 KG 领域相关信号。
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from docqa_search.backend.utils.errors import ConfigurationError
from docqa_search.backend.utils.logging_ import get_logger, log_event


CATEGORY_ALIASES: Dict[str, str] = {
    "domain_names": "domain_names",
    "domainNames": "domain_names",
    "function_names": "function_names",
    "functionNames": "function_names",
    "feature_names": "function_names",
    "operation_names": "operation_names",
    "operationNames": "operation_names",
    "system_fields": "system_fields",
    "systemFields": "system_fields",
    "system_terms": "system_terms",
    "systemTerms": "system_terms",
    "related_keywords": "related_keywords",
    "relatedKeywords": "related_keywords",
}  # docstring: 兼容 snake_case 与 camelCase 的分类键

CATEGORY_ORDER: Tuple[str, ...] = (
    "domain_names",
    "function_names",
    "operation_names",
    "system_fields",
    "system_terms",
    "related_keywords",
)

logger = get_logger("kb.domain_keywords")


def _clean_terms(values: Any) -> Tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]
    seen: Dict[str, None] = {}
    for v in values:
        s = str(v).strip()
        if s and s not in seen:
            seen[s] = None
    return tuple(seen)


class DomainKeywordRegistry:
    """
    [职责] 持有领域关键词分类与派生索引（全量词表按长度降序）。
    [边界] initialize 之后只读；未初始化时所有查询返回空结果。
    [上游关系] services 构造并初始化一次，注入 pipeline。
    [下游关系] preprocess/fusion 调用 terms_in/is_domain_term。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._initialized = False
        self._categories: Dict[str, Tuple[str, ...]] = {name: () for name in CATEGORY_ORDER}
        self._terms_by_length: Tuple[str, ...] = ()
        self._lower_index: Dict[str, str] = {}

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, keyword_categories: Mapping[str, Any]) -> bool:
        """
        [职责] 加载关键词分类（仅首次生效）。
        [边界] 未知分类键抛 ConfigurationError；返回 True 表示本次实际加载。
        [上游关系] 启动流程调用。
        [下游关系] terms_in/is_domain_term 可用。
        """
        with self._lock:
            if self._initialized:
                return False
            categories: Dict[str, Tuple[str, ...]] = {name: () for name in CATEGORY_ORDER}
            for raw_key, values in (keyword_categories or {}).items():
                key = CATEGORY_ALIASES.get(str(raw_key))
                if key is None:
                    if str(raw_key) in ("metadata", "statistics"):
                        continue  # docstring: 抽取产物中的附带信息
                    raise ConfigurationError(
                        message="unknown domain keyword category",
                        detail={"category": str(raw_key), "allowed": list(CATEGORY_ORDER)},
                    )
                categories[key] = _clean_terms(list(categories[key]) + list(_clean_terms(values)))

            all_terms: Dict[str, None] = {}
            for name in CATEGORY_ORDER:
                for term in categories[name]:
                    all_terms.setdefault(term, None)

            self._categories = categories
            self._terms_by_length = tuple(sorted(all_terms, key=lambda t: (-len(t), t)))
            self._lower_index = {t.lower(): t for t in self._terms_by_length}
            self._initialized = True

        log_event(
            logger,
            logging.INFO,
            "domain_keywords.initialized",
            fields={name: len(values) for name, values in categories.items()},
        )
        return True

    def load_json(self, path: Path | str) -> bool:
        """从领域知识 JSON 文件初始化（文件结构同 initialize 的 dict）。"""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ConfigurationError(message="domain knowledge file must hold an object", detail={"path": str(path)})
        return self.initialize(raw)

    @property
    def terms(self) -> Tuple[str, ...]:
        """全量领域词（长度降序，长词优先匹配）。"""
        return self._terms_by_length

    def is_domain_term(self, term: str) -> bool:
        return str(term or "").strip().lower() in self._lower_index

    def terms_in(self, text: Optional[str]) -> List[str]:
        """
        [职责] 返回 text 中出现的领域词（按出现位置、同位置长词优先）。
        [边界] 大小写不敏感；被更长已命中词完全覆盖的短词仍保留（供加权计数）。
        """
        if not text or not self._terms_by_length:
            return []
        hay = str(text).lower()
        found: List[Tuple[int, int, str]] = []
        for term in self._terms_by_length:
            pos = hay.find(term.lower())
            if pos >= 0:
                found.append((pos, -len(term), term))
        found.sort()
        return [t for _, _, t in found]

    def snapshot(self) -> Dict[str, Any]:
        """health/debug 用的只读摘要。"""
        return {
            "initialized": self._initialized,
            "term_count": len(self._terms_by_length),
            "categories": {name: len(values) for name, values in self._categories.items()},
        }


def build_registry(keyword_categories: Optional[Mapping[str, Iterable[str]]] = None) -> DomainKeywordRegistry:
    """构造注册表并（可选）立即初始化。"""
    registry = DomainKeywordRegistry()
    if keyword_categories is not None:
        registry.initialize(keyword_categories)
    return registry
