"""Demand aggregation and crop plan routes."""

from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.auth.dependencies import READ_ROLES, WRITE_ROLES, AuthPrincipal, require_role
from trayflow.database import get_db
from trayflow.models.enums import PlanStatusEnum
from trayflow.schemas.crops import BatchProjection
from trayflow.schemas.plans import (
	DemandBatchIn,
	PlanBatchCreate,
	PlanListRead,
	PlanRead,
	PlanStatusUpdate,
)
from trayflow.services.batch_service import BatchService
from trayflow.services.demand_aggregator import DemandAggregatorService, DemandRequest

router = APIRouter(prefix="/plans", tags=["plans"])


def _map_error(exc: Exception) -> HTTPException:
	if isinstance(exc, LookupError):
		return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
	if isinstance(exc, ValueError):
		return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
	return HTTPException(
		status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
		detail="Unexpected crop plan failure",
	)


@router.post("/demand", response_model=PlanListRead)
async def submit_demand(
	payload: DemandBatchIn,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> PlanListRead:
	requests = [
		DemandRequest(
			variety_id=item.variety_id,
			quantity_grams=item.quantity_grams,
			harvest_date=item.harvest_date,
			order_id=item.order_id,
			grams_per_tray=item.grams_per_tray,
		)
		for item in payload.items
	]
	try:
		plans = await DemandAggregatorService(db).submit(requests)
	except Exception as exc:
		raise _map_error(exc) from exc
	return PlanListRead(items=[PlanRead.model_validate(plan) for plan in plans])


@router.delete("/demand/orders/{order_id}", response_model=PlanListRead)
async def withdraw_order(
	order_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> PlanListRead:
	try:
		plans = await DemandAggregatorService(db).withdraw_order(order_id)
	except Exception as exc:
		raise _map_error(exc) from exc
	return PlanListRead(items=[PlanRead.model_validate(plan) for plan in plans])


@router.get("", response_model=PlanListRead)
async def list_plans(
	plan_status: PlanStatusEnum | None = Query(default=None, alias="status"),
	plant_from: date | None = None,
	plant_to: date | None = None,
	limit: int = Query(default=100, ge=1, le=1000),
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> PlanListRead:
	try:
		plans = await DemandAggregatorService(db).list_plans(
			status=plan_status,
			plant_from=plant_from,
			plant_to=plant_to,
			limit=limit,
		)
	except Exception as exc:
		raise _map_error(exc) from exc
	return PlanListRead(items=[PlanRead.model_validate(plan) for plan in plans])


@router.get("/{plan_id}", response_model=PlanRead)
async def get_plan(
	plan_id: uuid.UUID,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> PlanRead:
	try:
		plan = await DemandAggregatorService(db).get_plan(plan_id)
	except Exception as exc:
		raise _map_error(exc) from exc
	return PlanRead.model_validate(plan)


@router.patch("/{plan_id}/status", response_model=PlanRead)
async def update_plan_status(
	plan_id: uuid.UUID,
	payload: PlanStatusUpdate,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*WRITE_ROLES)),
) -> PlanRead:
	try:
		plan = await DemandAggregatorService(db).update_status(plan_id, payload.status)
	except Exception as exc:
		raise _map_error(exc) from exc
	return PlanRead.model_validate(plan)


@router.post("/{plan_id}/batches", response_model=BatchProjection, status_code=status.HTTP_201_CREATED)
async def create_batch_from_plan(
	plan_id: uuid.UUID,
	payload: PlanBatchCreate,
	db: AsyncSession = Depends(get_db),
	principal: AuthPrincipal = Depends(require_role(*WRITE_ROLES)),
) -> BatchProjection:
	try:
		batch_id = await DemandAggregatorService(db).create_batch(
			plan_id,
			started_at=payload.started_at,
			stage_code=payload.stage_code,
			actor_id=principal.subject_id,
		)
		return await BatchService(db).get_projection(batch_id)
	except Exception as exc:
		raise _map_error(exc) from exc
