# src/docqa_search/backend/db/fts.py

"""
[职责] SQLite FTS5 词法索引：为 document.title/content 提供 BM25 检索，并以 LexicalIndex 合同对外暴露。
[边界] 仅实现 SQLite FTS5；索引由触发器与 document 表同步；检索核心只读（不写 document）。
[上游关系] ingestion 写入 DocumentModel；engine.init_db 调用 ensure_sqlite_fts 建表/触发器。
[下游关系] retriever 通过 SqliteFtsLexicalIndex.search 获取词法候选（分数越大越相关）。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docqa_search.backend.kb.interfaces import LexicalHit
from docqa_search.backend.schemas.documents import DocumentRef
from docqa_search.backend.utils.errors import ConfigurationError, ProviderError


# 说明：
# - document.id 为字符串主键，不适合作为 rowid；FTS 表使用独立列 document_id（UNINDEXED）。
# - 使用 INSERT/UPDATE/DELETE triggers 同步 document_fts。
# - 默认 trigram 分词（日文无空格分词）；可配置为 unicode61 等。


FTS_TABLE = "document_fts"  # docstring: FTS 虚表名（SQLite FTS5）
ALLOWED_TOKENIZERS = ("trigram", "unicode61", "porter", "ascii")
TITLE_BM25_WEIGHT = 2.0  # docstring: 标题列 bm25 权重
CONTENT_BM25_WEIGHT = 1.0  # docstring: 正文列 bm25 权重
TRIGRAM_MIN_TERM_LEN = 3  # docstring: trigram 可 MATCH 的最短词长
SHORT_TERM_SCORE = 0.25  # docstring: 短词子串命中的每列基础分（乘以列权重）

_WS = re.compile(r"\s+")


@dataclass(frozen=True)
class FtsRow:
    """FTS search row (DB-side)."""  # docstring: 原始 bm25（越小越相关）

    document_id: str
    title: str
    content: str
    bm25: float
    snippet: str


def _resolve_tokenizer(tokenizer: Optional[str]) -> str:
    if tokenizer is None:
        from docqa_search.config import settings

        tokenizer = settings.DOCQA_FTS_TOKENIZER
    tok = str(tokenizer).strip().lower()
    if tok not in ALLOWED_TOKENIZERS:
        raise ConfigurationError(
            message="unsupported FTS tokenizer",
            detail={"tokenizer": tok, "allowed": list(ALLOWED_TOKENIZERS)},
        )
    return tok


async def ensure_sqlite_fts(session: AsyncSession, *, tokenizer: Optional[str] = None) -> None:
    """
    Ensure SQLite FTS5 structures exist.

    Creates:
      - document_fts virtual table
      - triggers to sync from document table
    """  # docstring: 应在启动或 ingestion 前调用一次
    tok = _resolve_tokenizer(tokenizer)

    await session.execute(
        text(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE}
            USING fts5(
              document_id UNINDEXED,
              title,
              content,
              tokenize = '{tok}'
            );
            """
        )
    )

    await session.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS document_ai AFTER INSERT ON document BEGIN
              INSERT INTO {FTS_TABLE}(document_id, title, content) VALUES (new.id, new.title, new.content);
            END;
            """
        )
    )

    await session.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS document_ad AFTER DELETE ON document BEGIN
              DELETE FROM {FTS_TABLE} WHERE document_id = old.id;
            END;
            """
        )
    )

    await session.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS document_au AFTER UPDATE OF title, content ON document BEGIN
              UPDATE {FTS_TABLE} SET title = new.title, content = new.content WHERE document_id = new.id;
            END;
            """
        )
    )

    await session.commit()  # docstring: DDL/trigger 需要提交以生效


async def rebuild_sqlite_fts(session: AsyncSession) -> None:
    """
    Rebuild FTS index from existing document table.
    """  # docstring: 运维/修复工具（触发器建立前已有数据时使用）
    await session.execute(text(f"DELETE FROM {FTS_TABLE};"))
    await session.execute(
        text(
            f"""
            INSERT INTO {FTS_TABLE}(document_id, title, content)
            SELECT id, title, content FROM document;
            """
        )
    )
    await session.commit()


def split_terms(query: str) -> List[str]:
    """空白切分并去重（保持首次出现顺序）。"""
    return list(dict.fromkeys(t for t in _WS.split(str(query or "").strip()) if t))


def build_match_expression(query: str, *, min_term_len: int = 0) -> str:
    """
    [职责] 将空白分隔的关键词串转为 FTS5 MATCH 表达式（各词加引号后 OR 连接）。
    [边界] 双引号转义为 ""；短于 min_term_len 的词不进入表达式；空输入返回空串。
    """
    terms = [t for t in split_terms(query) if len(t) >= min_term_len]
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)


async def _match_rows(session: AsyncSession, match: str, top_k: int) -> List[FtsRow]:
    sql = f"""
    SELECT
      {FTS_TABLE}.document_id AS document_id,
      d.title AS title,
      d.content AS content,
      bm25({FTS_TABLE}, 0.0, {TITLE_BM25_WEIGHT}, {CONTENT_BM25_WEIGHT}) AS score,
      snippet({FTS_TABLE}, 2, '[', ']', '…', 20) AS snippet
    FROM {FTS_TABLE}
    JOIN document d ON d.id = {FTS_TABLE}.document_id
    WHERE {FTS_TABLE} MATCH :q
    ORDER BY score ASC
    LIMIT :limit
    """
    params: Dict[str, Any] = {"q": match, "limit": int(top_k)}
    rows = (await session.execute(text(sql), params)).mappings().all()
    return [
        FtsRow(
            document_id=str(r["document_id"]),
            title=str(r["title"] or ""),
            content=str(r["content"] or ""),
            bm25=float(r["score"] or 0.0),
            snippet=str(r["snippet"] or ""),
        )
        for r in rows
    ]


async def _substring_rows(session: AsyncSession, terms: List[str], top_k: int) -> List[FtsRow]:
    """
    [职责] trigram 无法索引的短词：在 document 表上做大小写无关的子串匹配。
    [边界] 伪 bm25 = -(SHORT_TERM_SCORE × 命中列权重之和)，与 FTS 行同向（越小越相关）。
    """
    params: Dict[str, Any] = {"limit": int(top_k)}
    hit_clauses: List[str] = []
    score_parts: List[str] = []
    for i, term in enumerate(terms):
        params[f"t{i}"] = term.lower()
        in_title = f"instr(lower(d.title), :t{i}) > 0"
        in_content = f"instr(lower(d.content), :t{i}) > 0"
        hit_clauses.append(f"{in_title} OR {in_content}")
        score_parts.append(
            f"(CASE WHEN {in_title} THEN {TITLE_BM25_WEIGHT} ELSE 0 END)"
            f" + (CASE WHEN {in_content} THEN {CONTENT_BM25_WEIGHT} ELSE 0 END)"
        )

    sql = f"""
    SELECT
      d.id AS document_id,
      d.title AS title,
      d.content AS content,
      -({SHORT_TERM_SCORE} * ({" + ".join(score_parts)})) AS score
    FROM document d
    WHERE {" OR ".join(f"({c})" for c in hit_clauses)}
    ORDER BY score ASC, d.id ASC
    LIMIT :limit
    """
    rows = (await session.execute(text(sql), params)).mappings().all()
    return [
        FtsRow(
            document_id=str(r["document_id"]),
            title=str(r["title"] or ""),
            content=str(r["content"] or ""),
            bm25=float(r["score"] or 0.0),
            snippet=str(r["content"] or "")[:40],
        )
        for r in rows
    ]


async def search_documents_sqlite(
    session: AsyncSession,
    *,
    query: str,
    top_k: int,
    tokenizer: Optional[str] = None,
) -> List[FtsRow]:
    """
    SQLite FTS search over document title/content.

    Returns rows ordered by bm25 ascending (more relevant first).
    Under the trigram tokenizer, terms shorter than three characters cannot
    match the index and are looked up by substring on the document table;
    both row sets are merged per document (bm25 summed).
    """
    tok = _resolve_tokenizer(tokenizer)
    terms = split_terms(query)
    if not terms or top_k <= 0:
        return []

    min_len = TRIGRAM_MIN_TERM_LEN if tok == "trigram" else 0
    short_terms = [t for t in terms if len(t) < min_len]
    match = build_match_expression(query, min_term_len=min_len)

    rows: List[FtsRow] = []
    if match:
        rows.extend(await _match_rows(session, match, top_k))
    if short_terms:
        rows.extend(await _substring_rows(session, short_terms, top_k))

    merged: Dict[str, FtsRow] = {}
    for r in rows:
        prev = merged.get(r.document_id)
        if prev is None:
            merged[r.document_id] = r
        else:
            merged[r.document_id] = FtsRow(
                document_id=prev.document_id,
                title=prev.title,
                content=prev.content,
                bm25=prev.bm25 + r.bm25,
                snippet=prev.snippet,
            )
    return sorted(merged.values(), key=lambda r: r.bm25)[: int(top_k)]


class SqliteFtsLexicalIndex:
    """
    [职责] LexicalIndex 合同的 SQLite FTS5 实现：score = -bm25（越大越相关，≥0）。
    [边界] 每次 search 独立 session；trigram 下短词走子串匹配；SQL 异常包装为 ProviderError（retriever 降级处理）。
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        tokenizer: Optional[str] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._tokenizer = _resolve_tokenizer(tokenizer)  # docstring: 须与建表时的分词器一致

    async def search(self, query: str, limit: int) -> List[LexicalHit]:
        if limit <= 0:
            return []
        try:
            async with self._sessionmaker() as session:
                rows = await search_documents_sqlite(
                    session, query=query, top_k=limit, tokenizer=self._tokenizer
                )
        except Exception as exc:
            raise ProviderError(
                message="sqlite fts search failed",
                provider="sqlite_fts",
                detail={"error_type": type(exc).__name__},
                cause=exc,
            ) from exc

        return [
            LexicalHit(
                document=DocumentRef(id=r.document_id, title=r.title, content=r.content),
                score=max(0.0, -r.bm25),
            )
            for r in rows
        ]

