"""Batch creation, current-state projections and batch maintenance."""

from __future__ import annotations

import uuid
from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import asdict
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.errors import (
	InvalidStartStageError,
	LotDepletedError,
	UnknownBatchError,
	UnknownCropError,
	UnknownRecipeError,
)
from trayflow.models.crops import STAGE_TIMESTAMP_FIELDS, Crop, CropBatch, CropStageHistory
from trayflow.models.recipes import Recipe
from trayflow.models.transitions import CropStageTransition
from trayflow.schemas.crops import (
	BatchConsistency,
	BatchCreate,
	BatchProjection,
	CropRead,
	DerivedTiming,
	WateringChange,
)
from trayflow.services.stage_registry import StageInfo, StageRegistry
from trayflow.services.task_scheduler import TaskScheduler
from trayflow.services.time_phase import (
	RecipeParameters,
	StageTimestamps,
	TimePhase,
	calculate_batch_time_phase,
	calculate_time_phase,
)

logger = structlog.get_logger("trayflow.batches")


def _timing(phase: TimePhase) -> DerivedTiming:
	return DerivedTiming(**asdict(phase))


def _now(now: datetime | None) -> datetime:
	return now or datetime.now(UTC)


class BatchService:
	def __init__(self, db: AsyncSession, registry: StageRegistry | None = None):
		self.db = db
		self._registry = registry

	async def registry(self) -> StageRegistry:
		if self._registry is None:
			self._registry = await StageRegistry.load(self.db)
		return self._registry

	async def require_recipe(self, recipe_id: uuid.UUID) -> Recipe:
		recipe = await self.db.get(Recipe, recipe_id)
		if recipe is None:
			raise UnknownRecipeError(f"Recipe {recipe_id} not found")
		return recipe

	async def check_lot_available(self, recipe_id: uuid.UUID) -> Recipe:
		"""Precondition for new batches: the recipe's seed lot is not depleted."""
		recipe = await self.require_recipe(recipe_id)
		if recipe.lot_depleted:
			raise LotDepletedError(recipe_id)
		return recipe

	async def create_batch(self, payload: BatchCreate, *, actor_id: uuid.UUID | None = None) -> CropBatch:
		recipe = await self.check_lot_available(payload.recipe_id)
		registry = await self.registry()
		stage = self._start_stage(registry, recipe, payload.stage_code)
		started_at = payload.started_at or datetime.now(UTC)
		if started_at.tzinfo is None:
			started_at = started_at.replace(tzinfo=UTC)

		batch = CropBatch(
			id=uuid.uuid4(),
			recipe_id=recipe.id,
			order_id=payload.order_id,
			crop_plan_id=payload.crop_plan_id,
		)
		self.db.add(batch)

		tray_numbers = payload.tray_numbers or [str(n) for n in range(1, (payload.tray_count or 0) + 1)]
		column = STAGE_TIMESTAMP_FIELDS.get(stage.code)
		crops: list[Crop] = []
		for tray_number in tray_numbers:
			crop = Crop(
				id=uuid.uuid4(),
				batch_id=batch.id,
				recipe_id=recipe.id,
				tray_number=tray_number,
				current_stage_id=stage.id,
				notes=payload.notes,
			)
			if column is not None:
				setattr(crop, column, started_at)
			crops.append(crop)
			self.db.add(
				CropStageHistory(
					id=uuid.uuid4(),
					crop_id=crop.id,
					batch_id=batch.id,
					stage_id=stage.id,
					entered_at=started_at,
					notes="Batch created",
					created_by=actor_id,
				)
			)
		self.db.add_all(crops)
		await self.db.flush()

		scheduler = TaskScheduler(self.db, registry)
		params = RecipeParameters.from_recipe(recipe)
		for crop in crops:
			await scheduler.schedule_for_stage(crop, stage, params)
		await self.db.flush()

		logger.info(
			"crop_batch_created",
			batch_id=str(batch.id),
			recipe_id=str(recipe.id),
			stage=stage.code,
			trays=len(crops),
		)
		return batch

	async def get_projection(self, batch_id: uuid.UUID, now: datetime | None = None) -> BatchProjection:
		batch = await self.get_batch(batch_id)
		crops = await self._crops_for([batch.id])
		return await self._project(batch, crops.get(batch.id, []), _now(now))

	async def list_batches(
		self,
		*,
		stage_code: str | None = None,
		recipe_id: uuid.UUID | None = None,
		limit: int = 100,
		offset: int = 0,
		now: datetime | None = None,
	) -> list[BatchProjection]:
		stmt = select(CropBatch)
		if recipe_id is not None:
			stmt = stmt.where(CropBatch.recipe_id == recipe_id)
		if stage_code is not None:
			stage = (await self.registry()).get(stage_code)
			stmt = stmt.where(
				CropBatch.id.in_(select(Crop.batch_id).where(Crop.current_stage_id == stage.id))
			)
		stmt = stmt.order_by(CropBatch.created_at.desc(), CropBatch.id).limit(limit).offset(offset)
		batches = list((await self.db.execute(stmt)).scalars().all())

		crops = await self._crops_for([batch.id for batch in batches])
		at = _now(now)
		return [await self._project(batch, crops.get(batch.id, []), at) for batch in batches]

	async def get_crop(self, crop_id: uuid.UUID, now: datetime | None = None) -> CropRead:
		crop = await self.db.get(Crop, crop_id)
		if crop is None:
			raise UnknownCropError(crop_id)
		registry = await self.registry()
		recipe = RecipeParameters.from_recipe(await self.require_recipe(crop.recipe_id))
		return self._crop_read(crop, registry, recipe, _now(now))

	async def crop_history(self, crop_id: uuid.UUID) -> list[CropStageHistory]:
		if await self.db.get(Crop, crop_id) is None:
			raise UnknownCropError(crop_id)
		rows = await self.db.execute(
			select(CropStageHistory)
			.where(CropStageHistory.crop_id == crop_id)
			.order_by(CropStageHistory.entered_at.asc(), CropStageHistory.created_at.asc())
		)
		return list(rows.scalars().all())

	async def list_transitions(
		self,
		*,
		batch_id: uuid.UUID | None = None,
		since: datetime | None = None,
		limit: int = 100,
	) -> list[CropStageTransition]:
		stmt = select(CropStageTransition)
		if batch_id is not None:
			stmt = stmt.where(CropStageTransition.batch_id == batch_id)
		if since is not None:
			stmt = stmt.where(CropStageTransition.recorded_at >= since)
		stmt = stmt.order_by(CropStageTransition.recorded_at.desc()).limit(limit)
		rows = await self.db.execute(stmt)
		return list(rows.scalars().all())

	async def consistency(self, batch_id: uuid.UUID) -> BatchConsistency:
		"""Report how far a batch has drifted from "one recipe, one stage"."""
		batch = await self.get_batch(batch_id)
		crops = (await self._crops_for([batch.id])).get(batch.id, [])
		registry = await self.registry()

		issues: list[str] = []
		stage_counts = Counter(registry.by_id(crop.current_stage_id).code for crop in crops)
		if len(stage_counts) > 1:
			issues.append(f"Crops are in different stages: {', '.join(sorted(stage_counts))}")

		recipes = {crop.recipe_id for crop in crops}
		if len(recipes) > 1 or (recipes and batch.recipe_id not in recipes):
			issues.append(f"Batch contains {len(recipes | {batch.recipe_id})} different recipes")

		suspended = sum(1 for crop in crops if crop.watering_suspended_at is not None)
		if suspended:
			issues.append(f"{suspended} crops have suspended watering")

		for crop in crops:
			issues.extend(self._sequence_issues(crop, registry))

		return BatchConsistency(
			batch_id=batch.id,
			valid=not issues,
			issues=issues,
			total_crops=len(crops),
			stage_counts=dict(stage_counts),
			recipe_count=len(recipes),
			suspended_count=suspended,
		)

	async def suspend_watering(self, batch_id: uuid.UUID, at: datetime | None = None) -> WateringChange:
		batch = await self.get_batch(batch_id)
		crops = (await self._crops_for([batch.id])).get(batch.id, [])
		at = _now(at)
		changed = 0
		for crop in crops:
			if crop.watering_suspended_at is None:
				crop.watering_suspended_at = at
				changed += 1
		await self.db.flush()
		logger.info("crop_watering_suspended", batch_id=str(batch_id), changed=changed)
		return WateringChange(batch_id=batch.id, changed=changed, unchanged=len(crops) - changed)

	async def resume_watering(self, batch_id: uuid.UUID) -> WateringChange:
		batch = await self.get_batch(batch_id)
		crops = (await self._crops_for([batch.id])).get(batch.id, [])
		changed = 0
		for crop in crops:
			if crop.watering_suspended_at is not None:
				crop.watering_suspended_at = None
				changed += 1
		await self.db.flush()
		logger.info("crop_watering_resumed", batch_id=str(batch_id), changed=changed)
		return WateringChange(batch_id=batch.id, changed=changed, unchanged=len(crops) - changed)

	@staticmethod
	def _start_stage(registry: StageRegistry, recipe: Recipe, stage_code: str | None) -> StageInfo:
		if stage_code is not None:
			stage = registry.get(stage_code)
		else:
			preferred = "soaking" if recipe.requires_soaking else "germination"
			stage = registry.find(preferred) or registry.first
		if registry.is_terminal(stage.code):
			raise InvalidStartStageError(stage.code)
		return stage

	async def get_batch(self, batch_id: uuid.UUID) -> CropBatch:
		batch = await self.db.get(CropBatch, batch_id)
		if batch is None:
			raise UnknownBatchError(batch_id)
		return batch

	async def _crops_for(self, batch_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, list[Crop]]:
		grouped: dict[uuid.UUID, list[Crop]] = defaultdict(list)
		if not batch_ids:
			return grouped
		rows = await self.db.execute(
			select(Crop).where(Crop.batch_id.in_(batch_ids)).order_by(Crop.tray_number, Crop.id)
		)
		for crop in rows.scalars().all():
			grouped[crop.batch_id].append(crop)
		return grouped

	async def _project(self, batch: CropBatch, crops: list[Crop], now: datetime) -> BatchProjection:
		registry = await self.registry()
		recipe = RecipeParameters.from_recipe(await self.require_recipe(batch.recipe_id))
		reads = [self._crop_read(crop, registry, recipe, now) for crop in crops]

		warnings: list[str] = []
		stage_codes = {read.current_stage_code for read in reads}
		representative = registry.least_advanced(stage_codes)
		if len(stage_codes) > 1:
			warnings.append(f"crops span {len(stage_codes)} stages: {', '.join(sorted(stage_codes))}")

		derived = None
		if representative is not None:
			derived = _timing(
				calculate_batch_time_phase(
					representative.code,
					[StageTimestamps.from_crop(crop) for crop in crops],
					recipe,
					now,
					terminal_code=registry.terminal_code,
				)
			)

		return BatchProjection(
			batch_id=batch.id,
			recipe_id=batch.recipe_id,
			order_id=batch.order_id,
			crop_plan_id=batch.crop_plan_id,
			created_at=batch.created_at,
			current_stage_code=representative.code if representative else None,
			crop_count=len(crops),
			crops=reads,
			derived_timing=derived,
			warnings=warnings,
		)

	@staticmethod
	def _crop_read(crop: Crop, registry: StageRegistry, recipe: RecipeParameters, now: datetime) -> CropRead:
		stage = registry.by_id(crop.current_stage_id)
		phase = calculate_time_phase(
			stage.code,
			StageTimestamps.from_crop(crop),
			recipe,
			now,
			terminal_code=registry.terminal_code,
		)
		return CropRead(
			id=crop.id,
			batch_id=crop.batch_id,
			recipe_id=crop.recipe_id,
			tray_number=crop.tray_number,
			current_stage_id=crop.current_stage_id,
			current_stage_code=stage.code,
			soaking_at=crop.soaking_at,
			germination_at=crop.germination_at,
			blackout_at=crop.blackout_at,
			light_at=crop.light_at,
			harvested_at=crop.harvested_at,
			watering_suspended_at=crop.watering_suspended_at,
			notes=crop.notes,
			timing=_timing(phase),
		)

	@staticmethod
	def _sequence_issues(crop: Crop, registry: StageRegistry) -> list[str]:
		label = crop.tray_number or str(crop.id)
		current = registry.by_id(crop.current_stage_id)
		issues: list[str] = []
		if STAGE_TIMESTAMP_FIELDS.get(current.code) and StageTimestamps.from_crop(crop).for_stage(current.code) is None:
			issues.append(f"Crop {label} has no entry timestamp for {current.code}")

		previous: tuple[str, datetime] | None = None
		for stage in registry.stages:
			column = STAGE_TIMESTAMP_FIELDS.get(stage.code)
			value = getattr(crop, column) if column else None
			if value is None:
				continue
			if previous is not None and value < previous[1]:
				issues.append(f"Crop {label} entered {stage.code} before {previous[0]}")
			previous = (stage.code, value)
		return issues
