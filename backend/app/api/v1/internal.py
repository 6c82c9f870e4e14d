from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from app.core.security import require_admin_key
from app.services.runtime import EditorialRuntime, get_runtime

router = APIRouter(prefix="/internal", tags=["Internal"])


@router.post("/cron/deadline-scan")
async def deadline_scan(
    _admin: None = Depends(require_admin_key),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """
    立即执行一次审稿截止提醒排期（内部接口；worker 每天也会自动入队一次）。
    """
    result = await runtime.scanner.run()
    return {"success": True, **result}


@router.get("/jobs/failed")
async def list_failed_jobs(
    limit: int = Query(50, ge=1, le=200),
    _admin: None = Depends(require_admin_key),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    jobs = await runtime.queue.list_failed(limit=limit)
    return {"success": True, "data": jobs}


@router.post("/jobs/{job_id}/retry")
async def retry_job(
    job_id: str,
    _admin: None = Depends(require_admin_key),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    job = await runtime.queue.retry_failed(job_id)
    return {"success": True, "data": job}


@router.get("/health")
async def health(
    _admin: None = Depends(require_admin_key),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """
    队列健康度 + 当前 SSE 连接数。
    """
    queue = await runtime.queue.health()
    return {
        "success": True,
        "queue": queue,
        "sse": {
            "connections": runtime.broadcaster.registry.count(),
            "conversations": len(runtime.broadcaster.registry.conversation_ids()),
        },
        "bots": [b.id for b in runtime.registry.installed()],
    }
