#  Generation Broker - Service Status Routes
#
#  Liveness probe plus a snapshot of the background machinery:
#  queue depth, in-flight workers, polling table size, executors.
#
#  Depends on: container.py, models/schemas.py
#  Used by:    app.py

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends

from broker.container import Container
from broker.executors.registry import ExecutorRegistry
from broker.models.schemas import ServicesOut
from broker.services.polling import PollingSupervisor
from broker.services.task_queue import RedisTaskQueue
from broker.services.worker_pool import WorkerPool

router = APIRouter(prefix="/services", tags=["services"])
health_router = APIRouter(tags=["health"])


@health_router.get("/health")
async def health() -> dict:
    """Unauthenticated liveness probe."""
    return {"status": "ok"}


@router.get("")
@inject
async def get_services(
    queue: RedisTaskQueue = Depends(Provide[Container.queue]),
    worker_pool: WorkerPool = Depends(Provide[Container.worker_pool]),
    polling: PollingSupervisor = Depends(Provide[Container.polling]),
    registry: ExecutorRegistry = Depends(Provide[Container.executor_registry]),
) -> ServicesOut:
    return ServicesOut(
        queue_depth=await queue.length(),
        workers_in_flight=worker_pool.in_flight,
        polling_tracked=len(polling.tracked()),
        executors=registry.names(),
        failed_executors=registry.failed_executors,
    )
