"""Transition audit feed routes."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.auth.dependencies import READ_ROLES, require_role
from trayflow.database import get_db
from trayflow.errors import TransitionBusyError
from trayflow.models.transitions import CropStageTransition
from trayflow.schemas.transitions import TransitionListRead, TransitionRead
from trayflow.services.batch_service import BatchService

router = APIRouter(prefix="/transitions", tags=["transitions"])


def map_transition_error(exc: Exception) -> HTTPException:
	if isinstance(exc, TransitionBusyError):
		return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
	if isinstance(exc, LookupError):
		return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
	if isinstance(exc, ValueError):
		return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
	return HTTPException(
		status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
		detail="Unexpected transition failure",
	)


def to_transition_read(row: CropStageTransition) -> TransitionRead:
	return TransitionRead(
		id=row.id,
		type=row.type,
		batch_id=row.batch_id,
		crop_count=row.crop_count,
		from_stage_id=row.from_stage_id,
		to_stage_id=row.to_stage_id,
		transition_at=row.transition_at,
		recorded_at=row.recorded_at,
		user_id=row.user_id,
		reason=row.reason,
		succeeded_count=row.succeeded_count,
		failed_count=row.failed_count,
		failed_crops=row.failed_crops,
		metadata=row.metadata_,
		source=row.source,
	)


@router.get("", response_model=TransitionListRead)
async def list_transitions(
	batch_id: uuid.UUID | None = None,
	since: datetime | None = None,
	limit: int = Query(default=100, ge=1, le=1000),
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> TransitionListRead:
	try:
		rows = await BatchService(db).list_transitions(batch_id=batch_id, since=since, limit=limit)
	except Exception as exc:
		raise map_transition_error(exc) from exc
	return TransitionListRead(items=[to_transition_read(row) for row in rows])
