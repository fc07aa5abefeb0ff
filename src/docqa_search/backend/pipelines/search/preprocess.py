# src/docqa_search/backend/pipelines/search/preprocess.py

"""
[职责] query 预处理：NFKC 归一化后抽取核心关键词，剔除停用词/噪声词，前置领域词，并标记功能意图。
[边界] 纯 CPU 计算，确定性（同一输入与词表 → 同一输出顺序）；不调用外部服务；空结果不是错误。
[上游关系] pipeline 在 worker 线程中调用 analyze（与 embedding 并发）；可选 CacheManager 缓存结果。
[下游关系] retriever 使用 lexical_query()；scoring/fusion 使用 core_keywords/domain_terms/functional_intent。
"""

from __future__ import annotations

import dataclasses
import hashlib
import re
import unicodedata
from typing import Iterable, List, Optional, Sequence, Tuple

from docqa_search.backend.cache.manager import CacheManager, make_cache_key
from docqa_search.backend.kb.domain_keywords import DomainKeywordRegistry
from docqa_search.backend.pipelines.search.types import QueryAnalysis
from docqa_search.backend.utils.constants import (
    CACHE_NS_KEYWORDS,
    DEFAULT_FUNCTIONAL_INTENT_WORDS,
    DEFAULT_NEGATIVE_WORDS,
    DEFAULT_STOPWORDS,
)


PRIORITY_KEYWORD_COUNT = 3  # docstring: priority_keywords 取前 3 个核心关键词

_TOKEN = re.compile(r"\w+")


def normalize_text(text: str) -> str:
    """NFKC + 小写 + 去首尾空白（全角英数统一为半角）。"""
    return unicodedata.normalize("NFKC", str(text or "")).lower().strip()


def _script_of(ch: str) -> str:
    """字符所属书写体系：kanji / katakana / hiragana / other。"""
    code = ord(ch)
    if 0x4E00 <= code <= 0x9FFF or 0x3400 <= code <= 0x4DBF or ch in "々〆":
        return "kanji"
    if 0x30A0 <= code <= 0x30FF or ch == "ー":
        return "katakana"
    if 0x3040 <= code <= 0x309F:
        return "hiragana"
    return "other"


def _run_boundaries(token: str) -> List[bool]:
    """返回长度 len(token)+1 的布尔表：位置 i 是否为书写体系切换边界。"""
    marks = [False] * (len(token) + 1)
    marks[0] = True
    marks[len(token)] = True
    for i in range(1, len(token)):
        if _script_of(token[i]) != _script_of(token[i - 1]):
            marks[i] = True
    return marks


def _is_ascii(token: str) -> bool:
    return all(ord(c) < 128 for c in token)


class QueryPreprocessor:
    """
    [职责] 关键词抽取器（实例持有词表；可覆盖默认停用词/噪声词/意图词）。
    [边界]
    - ASCII token 按整词精确匹配停用词/噪声词。
    - CJK token 只在书写体系边界处剔除词表中的词（词尾也须落在边界），避免切断复合词。
    - 长度 <2 的关键词保留（不做最短长度截断）。
    [上游关系] services 构造一次并注入 pipeline。
    [下游关系] QueryAnalysis。
    """

    def __init__(
        self,
        *,
        registry: Optional[DomainKeywordRegistry] = None,
        stopwords: Optional[Iterable[str]] = None,
        negative_words: Optional[Iterable[str]] = None,
        functional_intent_words: Optional[Iterable[str]] = None,
        cache: Optional[CacheManager] = None,
        cache_ttl_ms: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.stopwords: Tuple[str, ...] = tuple(
            normalize_text(w) for w in (DEFAULT_STOPWORDS if stopwords is None else stopwords) if normalize_text(w)
        )
        self.negative_words: Tuple[str, ...] = tuple(
            normalize_text(w)
            for w in (DEFAULT_NEGATIVE_WORDS if negative_words is None else negative_words)
            if normalize_text(w)
        )
        self.functional_intent_words: Tuple[str, ...] = tuple(
            normalize_text(w)
            for w in (DEFAULT_FUNCTIONAL_INTENT_WORDS if functional_intent_words is None else functional_intent_words)
            if normalize_text(w)
        )
        self._removable = frozenset(self.stopwords) | frozenset(self.negative_words)
        self._removable_by_length: Tuple[str, ...] = tuple(sorted(self._removable, key=lambda w: (-len(w), w)))
        self.cache = cache
        self.cache_ttl_ms = cache_ttl_ms

    @property
    def fingerprint(self) -> str:
        """词表摘要（参与缓存 key，避免不同词表实例共享结果）。"""
        raw = "\x1f".join(
            [
                "|".join(self._removable_by_length),
                "|".join(self.functional_intent_words),
                "|".join(self.registry.terms) if self.registry is not None else "",
            ]
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def analyze(self, query: str) -> QueryAnalysis:
        """
        [职责] 对外入口：带缓存的关键词抽取。
        [边界] 缓存失败按 miss 处理（CacheManager.get_or_compute 内部处理）。
        """
        stripped = str(query or "").strip()
        if self.cache is None:
            return self._analyze(stripped)
        key = make_cache_key({"q": stripped.lower(), "v": self.fingerprint})
        result = self.cache.get_or_compute(
            CACHE_NS_KEYWORDS,
            key,
            lambda: self._analyze(stripped),
            ttl_ms=self.cache_ttl_ms,
        )
        if result.query != stripped:
            result = dataclasses.replace(result, query=stripped)  # docstring: 缓存 key 大小写不敏感
        return result

    def _analyze(self, query: str) -> QueryAnalysis:
        normalized = normalize_text(query)
        removed: List[str] = []
        fragments: List[str] = []

        for match in _TOKEN.finditer(normalized):
            token = match.group(0)
            if _is_ascii(token):
                if token in self._removable:
                    removed.append(token)
                else:
                    fragments.append(token)
                continue
            fragments.extend(self._split_cjk(token, removed))

        keywords = self._surface_domain_terms(fragments)
        core = tuple(dict.fromkeys(keywords))
        domain_terms: Tuple[str, ...] = ()
        if self.registry is not None:
            domain_terms = tuple(t for t in core if self.registry.is_domain_term(t))

        return QueryAnalysis(
            query=query,
            core_keywords=core,
            removed_words=tuple(dict.fromkeys(removed)),
            priority_keywords=core[:PRIORITY_KEYWORD_COUNT],
            domain_terms=domain_terms,
            functional_intent=self._has_functional_intent(normalized),
        )

    def _split_cjk(self, token: str, removed: List[str]) -> List[str]:
        """在书写体系边界处剔除可移除词，剩余连续片段作为关键词片段。"""
        boundaries = _run_boundaries(token)
        out: List[str] = []
        buf: List[str] = []
        i = 0
        n = len(token)
        while i < n:
            hit = None
            if boundaries[i]:
                for word in self._removable_by_length:
                    end = i + len(word)
                    if end <= n and boundaries[end] and token.startswith(word, i):
                        hit = word
                        break
            if hit is not None:
                if buf:
                    out.append("".join(buf))
                    buf = []
                removed.append(hit)
                i += len(hit)
                continue
            buf.append(token[i])
            i += 1
        if buf:
            out.append("".join(buf))
        return out

    def _surface_domain_terms(self, fragments: Sequence[str]) -> List[str]:
        """片段中包含的领域词前置于该片段（按出现位置、同位置长词优先）。"""
        if self.registry is None or not self.registry.initialized:
            return list(fragments)
        out: List[str] = []
        for fragment in fragments:
            for term in self.registry.terms_in(fragment):
                normalized_term = normalize_text(term)
                if normalized_term and normalized_term != fragment:
                    out.append(normalized_term)
            out.append(fragment)
        return out

    def _has_functional_intent(self, normalized: str) -> bool:
        tokens = set(_TOKEN.findall(normalized))
        for word in self.functional_intent_words:
            if _is_ascii(word):
                if word in tokens:
                    return True
            elif word in normalized:
                return True
        return False
