#  Generation Broker - Task Routes
#
#  Submit, list, detail, input edits, cancel and retry.
#  Users only see and modify their own tasks; admins see all.
#
#  Depends on: container.py, models/schemas.py, middleware/auth.py,
#              services/submission.py, services/tasks.py
#  Used by:    app.py

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.requests import Request

from broker.container import Container
from broker.middleware.auth import get_current_user
from broker.models.enums import TaskStatus, UserRole
from broker.models.records import Account
from broker.models.schemas import TaskCreate, TaskInputUpdate, TaskListOut, TaskOut
from broker.rate_limit import limiter
from broker.services.submission import SubmissionService
from broker.services.tasks import TaskStore

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("", status_code=201)
@limiter.limit("30/minute")
@inject
async def submit_task(
    request: Request,
    body: TaskCreate,
    user: Account = Depends(get_current_user),
    submission: SubmissionService = Depends(Provide[Container.submission]),
) -> TaskOut:
    """Charge the model price and create a task."""
    task = await submission.submit(body.input, user.id, user.username)
    return TaskOut.from_task(task)


@router.get("")
@inject
async def list_tasks(
    status: TaskStatus | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: Account = Depends(get_current_user),
    tasks: TaskStore = Depends(Provide[Container.tasks]),
) -> TaskListOut:
    creator_id = None if user.role == UserRole.ADMIN else user.id
    items, total = await tasks.list_page(creator_id=creator_id, status=status, page=page, limit=limit)
    return TaskListOut(
        items=[TaskOut.from_task(t) for t in items], total=total, page=page, limit=limit,
    )


@router.get("/{task_id}")
@inject
async def get_task(
    task_id: int,
    user: Account = Depends(get_current_user),
    tasks: TaskStore = Depends(Provide[Container.tasks]),
) -> TaskOut:
    task = await tasks.get(task_id)
    if user.role != UserRole.ADMIN and task.creator_id != user.id:
        raise HTTPException(403, "You do not own this task")
    return TaskOut.from_task(task)


@router.patch("/{task_id}")
@inject
async def update_task_input(
    task_id: int,
    body: TaskInputUpdate,
    user: Account = Depends(get_current_user),
    submission: SubmissionService = Depends(Provide[Container.submission]),
) -> TaskOut:
    """Replace the input of a task that has not started processing."""
    return TaskOut.from_task(await submission.update_input(task_id, user.id, body.input))


@router.post("/{task_id}/cancel")
@inject
async def cancel_task(
    task_id: int,
    user: Account = Depends(get_current_user),
    submission: SubmissionService = Depends(Provide[Container.submission]),
) -> TaskOut:
    return TaskOut.from_task(await submission.cancel(task_id, user.id))


@router.post("/{task_id}/retry")
@inject
async def retry_task(
    task_id: int,
    user: Account = Depends(get_current_user),
    submission: SubmissionService = Depends(Provide[Container.submission]),
) -> TaskOut:
    """Re-run a failed task. No new charge is made."""
    return TaskOut.from_task(await submission.retry(task_id, user.id))
