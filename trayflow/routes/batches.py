"""Batch creation, projection, bulk transition and watering routes."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.auth.dependencies import READ_ROLES, WRITE_ROLES, AuthPrincipal, require_role
from trayflow.database import get_db
from trayflow.middleware.logging import request_source
from trayflow.routes.transitions import map_transition_error, to_transition_read
from trayflow.schemas.crops import (
	BatchConsistency,
	BatchCreate,
	BatchListRead,
	BatchProjection,
	WateringChange,
)
from trayflow.schemas.transitions import (
	BulkAdvanceRequest,
	BulkRevertRequest,
	TransitionListRead,
	TransitionResult,
)
from trayflow.services.batch_service import BatchService
from trayflow.services.transition_service import TransitionService

router = APIRouter(prefix="/batches", tags=["batches"])


@router.post("", response_model=BatchProjection, status_code=status.HTTP_201_CREATED)
async def create_batch(
	payload: BatchCreate,
	db: AsyncSession = Depends(get_db),
	principal: AuthPrincipal = Depends(require_role(*WRITE_ROLES)),
) -> BatchProjection:
	service = BatchService(db)
	try:
		batch = await service.create_batch(payload, actor_id=principal.subject_id)
		return await service.get_projection(batch.id)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.get("", response_model=BatchListRead)
async def list_batches(
	stage_code: str | None = None,
	recipe_id: uuid.UUID | None = None,
	limit: int = Query(default=100, ge=1, le=500),
	offset: int = Query(default=0, ge=0),
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> BatchListRead:
	try:
		items = await BatchService(db).list_batches(
			stage_code=stage_code,
			recipe_id=recipe_id,
			limit=limit,
			offset=offset,
		)
	except Exception as exc:
		raise map_transition_error(exc) from exc
	return BatchListRead(items=items)


@router.get("/{batch_id}", response_model=BatchProjection)
async def get_batch(
	batch_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> BatchProjection:
	try:
		return await BatchService(db).get_projection(batch_id)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.get("/{batch_id}/consistency", response_model=BatchConsistency)
async def get_batch_consistency(
	batch_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> BatchConsistency:
	try:
		return await BatchService(db).consistency(batch_id)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.get("/{batch_id}/transitions", response_model=TransitionListRead)
async def get_batch_transitions(
	batch_id: uuid.UUID,
	limit: int = Query(default=100, ge=1, le=1000),
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> TransitionListRead:
	service = BatchService(db)
	try:
		await service.get_batch(batch_id)
		rows = await service.list_transitions(batch_id=batch_id, limit=limit)
	except Exception as exc:
		raise map_transition_error(exc) from exc
	return TransitionListRead(items=[to_transition_read(row) for row in rows])


@router.post("/{batch_id}/advance", response_model=TransitionResult)
async def bulk_advance(
	batch_id: uuid.UUID,
	payload: BulkAdvanceRequest,
	request: Request,
	db: AsyncSession = Depends(get_db),
	principal: AuthPrincipal = Depends(require_role(*WRITE_ROLES)),
) -> TransitionResult:
	service = TransitionService(db, getattr(request.app.state, "redis", None))
	try:
		return await service.bulk_advance(
			batch_id,
			from_stage=payload.from_stage,
			at=payload.at,
			actor_id=principal.subject_id,
			source=request_source(request),
		)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.post("/{batch_id}/revert", response_model=TransitionResult)
async def bulk_revert(
	batch_id: uuid.UUID,
	payload: BulkRevertRequest,
	request: Request,
	db: AsyncSession = Depends(get_db),
	principal: AuthPrincipal = Depends(require_role(*WRITE_ROLES)),
) -> TransitionResult:
	service = TransitionService(db, getattr(request.app.state, "redis", None))
	try:
		return await service.bulk_revert(
			batch_id,
			reason=payload.reason,
			from_stage=payload.from_stage,
			at=payload.at,
			actor_id=principal.subject_id,
			source=request_source(request),
		)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.post("/{batch_id}/watering/suspend", response_model=WateringChange)
async def suspend_watering(
	batch_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> WateringChange:
	try:
		return await BatchService(db).suspend_watering(batch_id)
	except Exception as exc:
		raise map_transition_error(exc) from exc


@router.post("/{batch_id}/watering/resume", response_model=WateringChange)
async def resume_watering(
	batch_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> WateringChange:
	try:
		return await BatchService(db).resume_watering(batch_id)
	except Exception as exc:
		raise map_transition_error(exc) from exc
