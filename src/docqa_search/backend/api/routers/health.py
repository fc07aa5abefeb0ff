# src/docqa_search/backend/api/routers/health.py

"""
[职责] Health Router：返回缓存统计与领域词表初始化状态。
[边界] 不触发检索；只读取 SearchService.health() 快照。
[上游关系] 运维/监控系统调用。
[下游关系] CacheManager.stats()。
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from docqa_search.backend.api.deps import get_search_service
from docqa_search.backend.services.search_service import SearchService


router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check(service: SearchService = Depends(get_search_service)) -> Dict[str, Any]:
    snapshot = service.health()
    status = "ok"
    cache_stats = snapshot.get("cache")
    if cache_stats is not None and not cache_stats.get("cleanup_running", True):
        status = "degraded"  # docstring: 缓存后台清理未运行
    return {
        "status": status,
        "cache": cache_stats,
        "registry_initialized": snapshot.get("registry_initialized", False),
        "registry": snapshot.get("registry"),
        "version": {"api": "v1"},
    }
