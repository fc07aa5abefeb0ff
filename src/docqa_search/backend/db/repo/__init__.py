# src/docqa_search/backend/db/repo/__init__.py

"""
[职责] db.repo 聚合导出：集中暴露只读仓储与 metadata store 适配器。
[边界] 仅做导入与 __all__ 暴露。
[上游关系] 依赖 document_repo。
[下游关系] services 层通过本模块统一导入；测试可直接引用。
"""

from __future__ import annotations

from .document_repo import DocumentRepo, SqlMetadataStore

__all__ = [
    "DocumentRepo",
    "SqlMetadataStore",
]
