# playground/sql_gate/test_document_fts_gate.py

"""
[职责] document fts gate：验证 FTS5 表/触发器创建、触发器同步、trigram 检索（score = -bm25）与 SQL metadata store。
[边界] 临时 SQLite 文件；只测试 SQL 侧，不涉及融合。
[上游关系] backend/db/engine.py + db/fts.py + db/repo/document_repo.py。
[下游关系] retriever 的词法路径与标签读取依赖这些实现。
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from docqa_search.backend.db.fts import (
    FTS_TABLE,
    SqliteFtsLexicalIndex,
    build_match_expression,
    ensure_sqlite_fts,
    rebuild_sqlite_fts,
)
from docqa_search.backend.db.models import DocumentModel
from docqa_search.backend.db.repo import SqlMetadataStore
from docqa_search.backend.schemas.documents import DocumentRef
from docqa_search.backend.utils.errors import ConfigurationError, ProviderError


pytestmark = pytest.mark.sql_gate


async def _seed(sessionmaker) -> None:
    async with sessionmaker() as session:
        session.add_all(
            [
                DocumentModel(
                    id="doc1",
                    title="教室管理機能の詳細",
                    content="教室管理画面では教室の登録と編集ができます。",
                    labels=["教室管理", "manual"],
                    structured_label={"domain": "教室管理", "feature": "教室登録", "tags": ["教室"], "status": "approved"},
                ),
                DocumentModel(
                    id="doc2",
                    title="ログイン機能について",
                    content="ログイン画面の仕様。",
                    labels=["認証"],
                ),
                DocumentModel(id="doc3", title="共通要件一覧", content="非機能要件の一覧です。"),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_fts_table_and_triggers_exist(sessionmaker) -> None:
    async with sessionmaker() as session:
        row = (
            await session.execute(text("SELECT name FROM sqlite_master WHERE type='table' AND name=:n"), {"n": FTS_TABLE})
        ).fetchone()
        assert row is not None

        names = {
            r[0]
            for r in (
                await session.execute(
                    text("SELECT name FROM sqlite_master WHERE type='trigger' AND name LIKE 'document_a%'")
                )
            ).fetchall()
        }
    assert {"document_ai", "document_ad", "document_au"} <= names


@pytest.mark.asyncio
async def test_trigram_search_returns_positive_scores(sessionmaker) -> None:
    await _seed(sessionmaker)
    index = SqliteFtsLexicalIndex(sessionmaker)

    hits = await index.search("教室管理", 10)

    assert [h.document.id for h in hits] == ["doc1"]
    assert hits[0].score > 0
    assert hits[0].document.title == "教室管理機能の詳細"


@pytest.mark.asyncio
async def test_keywords_are_or_combined(sessionmaker) -> None:
    await _seed(sessionmaker)
    hits = await SqliteFtsLexicalIndex(sessionmaker).search("教室管理 ログイン", 10)

    assert {h.document.id for h in hits} == {"doc1", "doc2"}
    assert all(a.score >= b.score for a, b in zip(hits, hits[1:]))


@pytest.mark.asyncio
async def test_triggers_keep_index_in_sync(sessionmaker) -> None:
    await _seed(sessionmaker)
    index = SqliteFtsLexicalIndex(sessionmaker)

    async with sessionmaker() as session:
        doc = await session.get(DocumentModel, "doc2")
        doc.title = "パスワード再設定"
        doc.content = "パスワード再設定の手順。"
        await session.commit()
    assert await index.search("ログイン", 10) == []
    assert [h.document.id for h in await index.search("パスワード", 10)] == ["doc2"]

    async with sessionmaker() as session:
        await session.delete(await session.get(DocumentModel, "doc2"))
        await session.commit()
    assert await index.search("パスワード", 10) == []


@pytest.mark.asyncio
async def test_rebuild_restores_index(sessionmaker) -> None:
    await _seed(sessionmaker)
    async with sessionmaker() as session:
        await session.execute(text(f"DELETE FROM {FTS_TABLE};"))
        await session.commit()
    index = SqliteFtsLexicalIndex(sessionmaker)
    assert await index.search("教室管理", 10) == []

    async with sessionmaker() as session:
        await rebuild_sqlite_fts(session)
    assert [h.document.id for h in await index.search("教室管理", 10)] == ["doc1"]


@pytest.mark.asyncio
async def test_empty_query_and_zero_limit_return_nothing(sessionmaker) -> None:
    await _seed(sessionmaker)
    index = SqliteFtsLexicalIndex(sessionmaker)
    assert await index.search("   ", 10) == []
    assert await index.search("教室管理", 0) == []


@pytest.mark.asyncio
async def test_two_char_terms_fall_back_to_substring_match(sessionmaker) -> None:
    await _seed(sessionmaker)
    index = SqliteFtsLexicalIndex(sessionmaker, tokenizer="trigram")

    hits = await index.search("教室", 10)
    assert [h.document.id for h in hits] == ["doc1"]
    assert hits[0].score > 0

    assert await index.search("予約", 10) == []


@pytest.mark.asyncio
async def test_short_term_title_hits_outrank_content_hits(sessionmaker) -> None:
    await _seed(sessionmaker)
    hits = await SqliteFtsLexicalIndex(sessionmaker, tokenizer="trigram").search("機能", 10)

    assert {h.document.id for h in hits} == {"doc1", "doc2", "doc3"}
    assert hits[-1].document.id == "doc3"  # 仅正文命中
    assert all(a.score >= b.score for a, b in zip(hits, hits[1:]))


@pytest.mark.asyncio
async def test_short_and_long_terms_are_or_combined(sessionmaker) -> None:
    await _seed(sessionmaker)
    index = SqliteFtsLexicalIndex(sessionmaker, tokenizer="trigram")

    hits = await index.search("教室 ログイン", 10)
    assert {h.document.id for h in hits} == {"doc1", "doc2"}
    assert len(await index.search("教室 ログイン", 1)) == 1


@pytest.mark.asyncio
async def test_substring_fallback_only_applies_to_trigram(sessionmaker) -> None:
    await _seed(sessionmaker)
    # 表仍为 trigram；声明 unicode61 时短词直接进入 MATCH，trigram 索引无法命中
    assert await SqliteFtsLexicalIndex(sessionmaker, tokenizer="unicode61").search("教室", 10) == []


def test_match_expression_quotes_terms() -> None:
    assert build_match_expression('教室 "管理" 教室') == '"教室" OR """管理"""'
    assert build_match_expression("  ") == ""
    assert build_match_expression("教室 ログイン", min_term_len=3) == '"ログイン"'


@pytest.mark.asyncio
async def test_unknown_tokenizer_is_rejected(sessionmaker) -> None:
    async with sessionmaker() as session:
        with pytest.raises(ConfigurationError):
            await ensure_sqlite_fts(session, tokenizer="mecab")


@pytest.mark.asyncio
async def test_sql_errors_surface_as_provider_errors(sessionmaker) -> None:
    async with sessionmaker() as session:
        await session.execute(text(f"DROP TABLE {FTS_TABLE};"))
        await session.commit()

    with pytest.raises(ProviderError):
        await SqliteFtsLexicalIndex(sessionmaker).search("教室管理", 5)


@pytest.mark.asyncio
async def test_sql_metadata_store_reads_labels(sessionmaker) -> None:
    await _seed(sessionmaker)
    store = SqlMetadataStore(sessionmaker)

    labels = await store.get_labels(DocumentRef(id="doc1", title="教室管理機能の詳細"))
    assert labels.labels == ("教室管理", "manual")
    assert labels.structured_label is not None
    assert labels.structured_label.domain == "教室管理"
    assert labels.structured_label.tags == ("教室",)

    plain = await store.get_labels(DocumentRef(id="doc2"))
    assert plain.labels == ("認証",)
    assert plain.structured_label is None

    missing = await store.get_labels(DocumentRef(id="nope"))
    assert missing.labels == ()
