# src/docqa_search/backend/utils/constants.py

"""
[职责] 集中定义协议字段名与默认词表（trace/timing/cache namespace/source kind/停用词/泛用文档词），降低跨模块硬编码。
[边界] 不包含运行时可变配置；不读取环境变量；词表仅作为默认值，调用方可按实例覆盖。
[上游关系] services/pipelines/cache/api 在构建请求/日志/响应时引用这些稳定字段与默认值。
[下游关系] schemas/logging 使用一致字段名以便排障与回放。
"""

from __future__ import annotations


TRACE_ID_KEY = "trace_id"  # docstring: trace_id 字段
REQUEST_ID_KEY = "request_id"  # docstring: request_id 字段
QUERY_HASH_KEY = "query_hash"  # docstring: query 摘要字段（不记录原文）
CACHE_NAMESPACE_KEY = "cache_namespace"  # docstring: 缓存命名空间字段

TRACE_FIELD_KEYS = (
    TRACE_ID_KEY,
    REQUEST_ID_KEY,
    QUERY_HASH_KEY,
    CACHE_NAMESPACE_KEY,
)  # docstring: 结构化日志推荐字段集合

TIMING_TOTAL_KEY = "total"  # docstring: timing_ms 的总耗时 key（短形式）
TIMING_TOTAL_MS_KEY = "total_ms"  # docstring: timing_ms 的总耗时 key（含单位）

# --- cache namespaces ---
CACHE_NS_EMBEDDING = "embedding"  # docstring: query 向量缓存
CACHE_NS_KEYWORDS = "keywords"  # docstring: 关键词抽取结果缓存
CACHE_NS_SEARCH = "search"  # docstring: 整体检索结果缓存

# --- retrieval source kinds ---
SOURCE_VECTOR = "vector"
SOURCE_LEXICAL = "lexical"
SOURCE_TITLE_EXACT = "title-exact"
SOURCE_KNOWLEDGE_GRAPH = "knowledge-graph"

# --- preprocessing word lists ---
DEFAULT_STOPWORDS = (
    "は", "が", "を", "に", "で", "と", "の", "も", "から", "まで", "へ", "や",
    "について", "に関して", "に対して",
    "です", "ます", "である", "でしょうか",
    "ください", "して", "くれ", "とは",
    "the", "a", "an", "of", "to", "in", "on", "for", "is", "are",
)  # docstring: 助词/语尾等停用词（按 token 精确匹配）

DEFAULT_NEGATIVE_WORDS = (
    "何", "何が", "なに", "いつ", "どこ", "だれ", "どの", "どう", "どのように", "何で", "なぜ", "どうして",
    "できる", "できない", "できますか", "できませんか",
    "可能", "不可能", "可能ですか", "不可能ですか",
    "原因", "理由", "方法", "やり方", "手順", "仕方", "の使い方", "の詳細",
    "など", "か", "より",
    "教える", "教えて", "知る", "知りたい", "確認", "見る",
    "what", "how", "why", "possible", "can",
)  # docstring: 检索噪声词（疑问/可否/方法表达），精确匹配剔除

DEFAULT_FUNCTIONAL_INTENT_WORDS = (
    "方法", "やり方", "手順", "なぜ", "どうして", "可能", "できる", "できますか",
    "how", "why", "possible",
)  # docstring: 功能意图词（触发 template 分类降权）

DEFAULT_GENERIC_DOCUMENT_TERMS = (
    "共通要件", "非機能要件", "要件", "ガイドライン",
    "用語", "ワード", "ディフィニション", "definition",
    "一覧", "フロー",
)  # docstring: 泛用文档标题词（命中即 ×0.5 降权）

TEMPLATE_CATEGORY_NAMES = ("template", "テンプレート")  # docstring: 泛用模板分类名
APPROVED_STATUS = "approved"  # docstring: 审批通过状态
