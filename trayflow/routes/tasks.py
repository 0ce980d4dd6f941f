"""Due-task feed and task mutation routes for the automation layer."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.auth.dependencies import READ_ROLES, WRITE_ROLES, require_role
from trayflow.database import get_db
from trayflow.schemas.tasks import (
	ReconcileResponse,
	TaskErrorRequest,
	TaskListRead,
	TaskRead,
	TaskTriggerRequest,
)
from trayflow.services.task_scheduler import TaskScheduler

router = APIRouter(prefix="/tasks", tags=["tasks"])


def _map_error(exc: Exception) -> HTTPException:
	if isinstance(exc, LookupError):
		return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
	if isinstance(exc, ValueError):
		return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
	return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="task failure")


@router.get("/due", response_model=TaskListRead)
async def list_due_tasks(
	now: datetime | None = None,
	limit: int | None = Query(default=None, ge=1, le=5000),
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> TaskListRead:
	try:
		tasks = await TaskScheduler(db).due_tasks(now or datetime.now(UTC), limit)
	except Exception as exc:
		raise _map_error(exc) from exc
	return TaskListRead(items=[TaskRead.model_validate(task) for task in tasks])


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_tasks(
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> ReconcileResponse:
	try:
		return await TaskScheduler(db).reconcile()
	except Exception as exc:
		raise _map_error(exc) from exc


@router.post("/{task_id}/trigger", response_model=TaskRead)
async def trigger_task(
	task_id: uuid.UUID,
	payload: TaskTriggerRequest,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> TaskRead:
	try:
		task = await TaskScheduler(db).trigger(task_id, payload.at)
	except Exception as exc:
		raise _map_error(exc) from exc
	return TaskRead.model_validate(task)


@router.post("/{task_id}/dismiss", response_model=TaskRead)
async def dismiss_task(
	task_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> TaskRead:
	try:
		task = await TaskScheduler(db).dismiss(task_id)
	except Exception as exc:
		raise _map_error(exc) from exc
	return TaskRead.model_validate(task)


@router.post("/{task_id}/error", response_model=TaskRead)
async def mark_task_error(
	task_id: uuid.UUID,
	payload: TaskErrorRequest,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> TaskRead:
	try:
		task = await TaskScheduler(db).mark_error(task_id, payload.message)
	except Exception as exc:
		raise _map_error(exc) from exc
	return TaskRead.model_validate(task)
