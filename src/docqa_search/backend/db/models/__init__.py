# src/docqa_search/backend/db/models/__init__.py

"""
[职责] db.models 聚合导出：集中声明 ORM Models，供 init_db 与 repo 层统一导入。
[边界] 仅做导入与 __all__ 暴露；不包含任何业务逻辑。
[上游关系] 依赖各模型文件。
[下游关系] backend.db.engine / repo 层 会导入本模块以加载元数据。
"""

from __future__ import annotations

from ..base import Base
from .document import DocumentModel

__all__ = [
    "Base",
    "DocumentModel",
]
