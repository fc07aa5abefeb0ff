# src/docqa_search/backend/db/models/document.py

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..base import Base, TimestampMixin


class DocumentModel(Base, TimestampMixin):
    """
    [职责] 文档实体：检索单元（chunk）的标题/正文/标签快照。
    [边界] 由 ingestion 协作方写入；检索核心只读；向量存于向量索引，不在此表。
    [上游关系] ingestion 同步外部文档后写入。
    [下游关系] db/fts 通过触发器建立 FTS5 索引；SqlMetadataStore 读取 labels/structured_label。
    """

    __tablename__ = "document"

    id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="文档ID（ingestion 决定的稳定字符串）",  # docstring: 与向量索引主键一致
    )

    title: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        default="",
        comment="文档标题",  # docstring: 标题匹配与泛用词降权的依据
    )

    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        comment="chunk 文本",  # docstring: FTS 索引字段
    )

    labels: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="自由文本标签",  # docstring: 排除过滤与 label score 的普通标签部分
    )

    structured_label: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="结构化标签（category/domain/feature/priority/status/tags/confidence）",  # docstring: 可空
    )
