"""Per-crop transition, projection and history routes."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.auth.dependencies import READ_ROLES, WRITE_ROLES, AuthPrincipal, require_role
from trayflow.database import get_db
from trayflow.middleware.logging import request_source
from trayflow.routes.transitions import map_transition_error
from trayflow.schemas.crops import CropRead
from trayflow.schemas.tasks import TaskListRead, TaskRead
from trayflow.schemas.transitions import AdvanceRequest, HistoryRead, RevertRequest, TransitionResult
from trayflow.services.batch_service import BatchService
from trayflow.services.task_scheduler import TaskScheduler
from trayflow.services.transition_service import TransitionService

router = APIRouter(prefix="/crops", tags=["crops"])


@router.post("/advance", response_model=TransitionResult)
async def advance_crops(
	payload: AdvanceRequest,
	request: Request,
	db: AsyncSession = Depends(get_db),
	principal: AuthPrincipal = Depends(require_role(*WRITE_ROLES)),
) -> TransitionResult:
	service = TransitionService(db, getattr(request.app.state, "redis", None))
	try:
		return await service.advance(
			payload.crop_ids,
			at=payload.at,
			actor_id=principal.subject_id,
			expected_stage=payload.expected_stage,
			source=request_source(request),
		)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.post("/revert", response_model=TransitionResult)
async def revert_crops(
	payload: RevertRequest,
	request: Request,
	db: AsyncSession = Depends(get_db),
	principal: AuthPrincipal = Depends(require_role(*WRITE_ROLES)),
) -> TransitionResult:
	service = TransitionService(db, getattr(request.app.state, "redis", None))
	try:
		return await service.revert(
			payload.crop_ids,
			reason=payload.reason,
			at=payload.at,
			actor_id=principal.subject_id,
			expected_stage=payload.expected_stage,
			source=request_source(request),
		)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.get("/{crop_id}", response_model=CropRead)
async def get_crop(
	crop_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> CropRead:
	try:
		return await BatchService(db).get_crop(crop_id)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.get("/{crop_id}/history", response_model=list[HistoryRead])
async def get_crop_history(
	crop_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> list[HistoryRead]:
	try:
		rows = await BatchService(db).crop_history(crop_id)
	except Exception as exc:
		raise map_transition_error(exc) from exc
	return [HistoryRead.model_validate(row) for row in rows]


@router.get("/{crop_id}/tasks", response_model=TaskListRead)
async def get_crop_tasks(
	crop_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> TaskListRead:
	try:
		await BatchService(db).get_crop(crop_id)
		tasks = await TaskScheduler(db).list_for_crop(crop_id)
	except Exception as exc:
		raise map_transition_error(exc) from exc
	return TaskListRead(items=[TaskRead.model_validate(task) for task in tasks])
