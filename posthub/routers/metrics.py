from fastapi import APIRouter, Depends, HTTPException

from posthub.container import Container
from posthub.dependencies import get_container
from posthub.schemas import JobView, MetricsResponse

router = APIRouter(prefix="/api/v1/metrics", tags=["metrics"])

@router.get("", response_model=MetricsResponse)
async def get_metrics(container: Container = Depends(get_container)):
    return MetricsResponse(
        total_posts=await container.posts.count(),
        connections=container.gateway.connection_count,
        cache_info=container.cache.stats,
        queue=await container.queue.stats(),
    )

@router.get("/dead-letters", response_model=list[JobView])
async def list_dead_letters(limit: int = 100, container: Container = Depends(get_container)):
    return await container.queue.dead_letters(limit=min(max(limit, 1), 500))

@router.post("/dead-letters/{job_id}/retry", response_model=JobView)
async def retry_dead_letter(job_id: int, container: Container = Depends(get_container)):
    if not await container.queue.retry(job_id):
        raise HTTPException(status_code=404, detail="Dead-lettered job not found")
    return await container.queue.get(job_id)
