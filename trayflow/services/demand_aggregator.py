"""Roll order demand up into planting requirements per variety and harvest date.

Quantities from separate orders targeting the same ``(variety_id,
harvest_date)`` are summed before trays are computed so rounding happens
once per harvest window, not once per order.
"""

from __future__ import annotations

import math
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_CEILING, Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.errors import (
	InvalidPlanStatusError,
	RecipeParameterMissingError,
	UnknownPlanError,
	UnknownRecipeError,
)
from trayflow.models.enums import PlanStatusEnum
from trayflow.models.plans import AggregatedCropPlan
from trayflow.models.recipes import Recipe
from trayflow.schemas.crops import BatchCreate
from trayflow.services.batch_service import BatchService
from trayflow.services.time_phase import RecipeParameters

logger = structlog.get_logger("trayflow.demand")

PLAN_TRANSITIONS: dict[PlanStatusEnum, frozenset[PlanStatusEnum]] = {
	PlanStatusEnum.draft: frozenset({PlanStatusEnum.confirmed, PlanStatusEnum.cancelled}),
	PlanStatusEnum.confirmed: frozenset(
		{PlanStatusEnum.draft, PlanStatusEnum.in_progress, PlanStatusEnum.cancelled}
	),
	PlanStatusEnum.in_progress: frozenset({PlanStatusEnum.completed}),
	PlanStatusEnum.completed: frozenset(),
	PlanStatusEnum.cancelled: frozenset(),
}


@dataclass(slots=True, frozen=True)
class DemandRequest:
	variety_id: uuid.UUID
	quantity_grams: float
	harvest_date: date
	order_id: uuid.UUID | None = None
	grams_per_tray: float | None = None


@dataclass(slots=True, frozen=True)
class PlanRequirement:
	variety_id: uuid.UUID
	harvest_date: date
	total_grams_needed: float
	grams_per_tray: float
	buffer_percentage: float
	total_trays_needed: int
	plant_date: date
	seed_soak_date: date | None


def _decimal(value: float | int) -> Decimal:
	return Decimal(str(value))


def trays_needed(grams: float, buffer_percentage: float, grams_per_tray: float) -> int:
	"""``ceil(grams * (1 + buffer/100) / grams_per_tray)`` in exact decimal arithmetic."""
	if grams_per_tray <= 0:
		raise ValueError("grams_per_tray must be positive")
	if grams <= 0:
		return 0
	buffered = _decimal(grams) * (1 + _decimal(buffer_percentage) / 100)
	return int((buffered / _decimal(grams_per_tray)).to_integral_value(rounding=ROUND_CEILING))


def plant_date_for(harvest_date: date, recipe: RecipeParameters) -> date:
	growth_days = sum(
		value or 0 for value in (recipe.germination_days, recipe.blackout_days, recipe.light_days)
	)
	return harvest_date - timedelta(days=math.ceil(growth_days))


def seed_soak_date_for(plant_date: date, recipe: RecipeParameters) -> date | None:
	if not recipe.requires_soaking:
		return None
	return plant_date - timedelta(days=math.ceil((recipe.seed_soak_hours or 0) / 24))


def aggregate_demand(
	requests: Iterable[DemandRequest],
) -> dict[tuple[uuid.UUID, date], list[DemandRequest]]:
	"""Group demand by ``(variety_id, harvest_date)`` preserving arrival order."""
	grouped: dict[tuple[uuid.UUID, date], list[DemandRequest]] = defaultdict(list)
	for request in requests:
		grouped[(request.variety_id, request.harvest_date)].append(request)
	return dict(grouped)


def compute_plan_requirement(
	variety_id: uuid.UUID,
	harvest_date: date,
	total_grams: float,
	recipe: RecipeParameters,
	*,
	grams_per_tray: float | None = None,
	recipe_id: uuid.UUID | None = None,
) -> PlanRequirement:
	per_tray = grams_per_tray or recipe.expected_yield_grams
	if not per_tray:
		raise RecipeParameterMissingError(recipe_id or variety_id, "expected_yield_grams")

	plant_date = plant_date_for(harvest_date, recipe)
	return PlanRequirement(
		variety_id=variety_id,
		harvest_date=harvest_date,
		total_grams_needed=float(total_grams),
		grams_per_tray=float(per_tray),
		buffer_percentage=recipe.buffer_percentage,
		total_trays_needed=trays_needed(total_grams, recipe.buffer_percentage, per_tray),
		plant_date=plant_date,
		seed_soak_date=seed_soak_date_for(plant_date, recipe),
	)


def _order_key(request: DemandRequest) -> str:
	return str(request.order_id) if request.order_id else f"adhoc:{uuid.uuid4()}"


class DemandAggregatorService:
	def __init__(self, db: AsyncSession):
		self.db = db

	async def submit(self, requests: Sequence[DemandRequest]) -> list[AggregatedCropPlan]:
		"""Merge demand into the open draft plan for each harvest window.

		Per-order grams live in ``calculation_details["orders"]``; submitting
		the same order again replaces its quantity instead of adding to it.
		"""
		plans: list[AggregatedCropPlan] = []
		for (variety_id, harvest_date), items in aggregate_demand(requests).items():
			recipe = await self.recipe_for_variety(variety_id)
			plan = await self._draft_plan(variety_id, harvest_date)
			details: dict[str, Any] = dict(plan.calculation_details) if plan else {}

			submitted: dict[str, float] = defaultdict(float)
			for item in items:
				submitted[_order_key(item)] += float(item.quantity_grams)
			orders = {**details.get("orders", {}), **submitted}

			override = next(
				(item.grams_per_tray for item in reversed(items) if item.grams_per_tray),
				details.get("grams_per_tray_override"),
			)
			plan = await self._write_plan(plan, recipe, variety_id, harvest_date, orders, override)
			plans.append(plan)

		await self.db.flush()
		return plans

	async def withdraw_order(self, order_id: uuid.UUID) -> list[AggregatedCropPlan]:
		"""Remove an order from every draft plan; emptied plans are cancelled."""
		rows = await self.db.execute(
			select(AggregatedCropPlan).where(AggregatedCropPlan.status == PlanStatusEnum.draft)
		)
		key = str(order_id)
		touched: list[AggregatedCropPlan] = []
		for plan in rows.scalars().all():
			orders = dict(plan.calculation_details.get("orders", {}))
			if key not in orders:
				continue
			del orders[key]
			if not orders:
				plan.status = PlanStatusEnum.cancelled
				plan.calculation_details = {**plan.calculation_details, "orders": {}}
				logger.info("crop_plan_cancelled", plan_id=str(plan.id), order_id=key)
			else:
				recipe = await self._require_recipe(plan.recipe_id)
				await self._write_plan(
					plan,
					recipe,
					plan.variety_id,
					plan.harvest_date,
					orders,
					plan.calculation_details.get("grams_per_tray_override"),
				)
			touched.append(plan)
		await self.db.flush()
		return touched

	async def recipe_for_variety(self, variety_id: uuid.UUID) -> Recipe:
		rows = await self.db.execute(
			select(Recipe)
			.where(Recipe.variety_id == variety_id, Recipe.is_active.is_(True))
			.order_by(Recipe.created_at.desc())
			.limit(1)
		)
		recipe = rows.scalar_one_or_none()
		if recipe is None:
			raise UnknownRecipeError(f"No active recipe for variety {variety_id}")
		return recipe

	async def list_plans(
		self,
		*,
		status: PlanStatusEnum | None = None,
		plant_from: date | None = None,
		plant_to: date | None = None,
		limit: int = 100,
	) -> list[AggregatedCropPlan]:
		stmt = select(AggregatedCropPlan)
		if status is not None:
			stmt = stmt.where(AggregatedCropPlan.status == status)
		if plant_from is not None:
			stmt = stmt.where(AggregatedCropPlan.plant_date >= plant_from)
		if plant_to is not None:
			stmt = stmt.where(AggregatedCropPlan.plant_date <= plant_to)
		stmt = stmt.order_by(AggregatedCropPlan.plant_date.asc(), AggregatedCropPlan.variety_id).limit(limit)
		rows = await self.db.execute(stmt)
		return list(rows.scalars().all())

	async def get_plan(self, plan_id: uuid.UUID) -> AggregatedCropPlan:
		plan = await self.db.get(AggregatedCropPlan, plan_id)
		if plan is None:
			raise UnknownPlanError(plan_id)
		return plan

	async def update_status(self, plan_id: uuid.UUID, status: PlanStatusEnum) -> AggregatedCropPlan:
		plan = await self.get_plan(plan_id)
		if status == plan.status:
			return plan
		if status not in PLAN_TRANSITIONS[plan.status]:
			raise InvalidPlanStatusError(f"Cannot move crop plan from {plan.status} to {status}")
		previous = plan.status
		plan.status = status
		await self.db.flush()
		logger.info("crop_plan_status_changed", plan_id=str(plan_id), previous=previous.value, status=status.value)
		return plan

	async def create_batch(
		self,
		plan_id: uuid.UUID,
		*,
		started_at: datetime | None = None,
		stage_code: str | None = None,
		actor_id: uuid.UUID | None = None,
	) -> uuid.UUID:
		"""Plant a confirmed plan: one batch of ``total_trays_needed`` trays."""
		plan = await self.get_plan(plan_id)
		if plan.status != PlanStatusEnum.confirmed:
			raise InvalidPlanStatusError(f"Crop plan {plan_id} is {plan.status}, not confirmed")
		if plan.total_trays_needed < 1:
			raise InvalidPlanStatusError(f"Crop plan {plan_id} needs no trays")

		batch = await BatchService(self.db).create_batch(
			BatchCreate(
				recipe_id=plan.recipe_id,
				tray_count=plan.total_trays_needed,
				stage_code=stage_code,
				started_at=started_at or datetime.now(UTC),
				crop_plan_id=plan.id,
			),
			actor_id=actor_id,
		)
		plan.status = PlanStatusEnum.in_progress
		plan.calculation_details = {**plan.calculation_details, "batch_id": str(batch.id)}
		await self.db.flush()
		logger.info("crop_plan_planted", plan_id=str(plan_id), batch_id=str(batch.id))
		return batch.id

	async def _draft_plan(self, variety_id: uuid.UUID, harvest_date: date) -> AggregatedCropPlan | None:
		rows = await self.db.execute(
			select(AggregatedCropPlan)
			.where(
				AggregatedCropPlan.variety_id == variety_id,
				AggregatedCropPlan.harvest_date == harvest_date,
				AggregatedCropPlan.status == PlanStatusEnum.draft,
			)
			.order_by(AggregatedCropPlan.created_at.asc())
			.limit(1)
		)
		return rows.scalar_one_or_none()

	async def _require_recipe(self, recipe_id: uuid.UUID) -> Recipe:
		recipe = await self.db.get(Recipe, recipe_id)
		if recipe is None:
			raise UnknownRecipeError(f"Recipe {recipe_id} not found")
		return recipe

	async def _write_plan(
		self,
		plan: AggregatedCropPlan | None,
		recipe: Recipe,
		variety_id: uuid.UUID,
		harvest_date: date,
		orders: dict[str, float],
		grams_per_tray: float | None,
	) -> AggregatedCropPlan:
		params = RecipeParameters.from_recipe(recipe)
		requirement = compute_plan_requirement(
			variety_id,
			harvest_date,
			sum(orders.values()),
			params,
			grams_per_tray=grams_per_tray,
			recipe_id=recipe.id,
		)
		details = {
			"orders": orders,
			"grams_per_tray_override": grams_per_tray,
			"buffer_percentage": requirement.buffer_percentage,
			"growth_days": params.growth_days,
			"seed_soak_hours": params.seed_soak_hours,
			"calculated_at": datetime.now(UTC).isoformat(),
		}

		if plan is None:
			plan = AggregatedCropPlan(id=uuid.uuid4(), variety_id=variety_id, status=PlanStatusEnum.draft)
			self.db.add(plan)
		plan.recipe_id = recipe.id
		plan.harvest_date = harvest_date
		plan.total_grams_needed = requirement.total_grams_needed
		plan.total_trays_needed = requirement.total_trays_needed
		plan.grams_per_tray = requirement.grams_per_tray
		plan.plant_date = requirement.plant_date
		plan.seed_soak_date = requirement.seed_soak_date
		plan.calculation_details = details

		logger.info(
			"crop_plan_aggregated",
			variety_id=str(variety_id),
			harvest_date=harvest_date.isoformat(),
			orders=len(orders),
			total_grams=requirement.total_grams_needed,
			trays=requirement.total_trays_needed,
		)
		return plan
