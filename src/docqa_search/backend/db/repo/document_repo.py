# src/docqa_search/backend/db/repo/document_repo.py

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docqa_search.backend.db.models.document import DocumentModel
from docqa_search.backend.schemas.documents import DocumentLabels, DocumentRef
from docqa_search.backend.utils.errors import ProviderError


class DocumentRepo:
    """
    [职责] DocumentRepo：只读读取文档与标签快照。
    [边界] 不做 ingestion 写入；不做检索重算。
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_document(self, document_id: str) -> Optional[DocumentModel]:
        did = str(document_id or "").strip()
        if not did:
            return None
        stmt = select(DocumentModel).where(DocumentModel.id == did)
        return (await self._session.execute(stmt)).scalars().first()

    async def get_labels(self, document_id: str) -> DocumentLabels:
        doc = await self.get_document(document_id)
        if doc is None:
            return DocumentLabels()
        return DocumentLabels.from_raw(doc.labels, doc.structured_label)


class SqlMetadataStore:
    """
    [职责] MetadataStore 合同的 SQL 实现（每次查询独立 session）。
    [边界] 只读；DB 异常包装为 ProviderError，由 retriever 降级为空标签。
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def get_labels(self, document: DocumentRef) -> DocumentLabels:
        try:
            async with self._sessionmaker() as session:
                return await DocumentRepo(session).get_labels(document.id)
        except Exception as exc:
            raise ProviderError(
                message="metadata lookup failed",
                provider="sql_metadata",
                detail={"document_id": document.id, "error_type": type(exc).__name__},
                cause=exc,
            ) from exc
