"""Stage-driven task scheduling, the due-task feed and task triggering.

Tasks are computed when a crop enters a stage, never by a timer.  An
external job runner polls ``due_tasks`` and reports back via ``trigger``;
triggering is idempotent so at-least-once delivery is safe.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.config import get_settings
from trayflow.errors import UnknownTaskError
from trayflow.models.crops import Crop
from trayflow.models.enums import TaskStatusEnum, TaskTypeEnum
from trayflow.models.recipes import Recipe
from trayflow.models.tasks import CropTask
from trayflow.schemas.tasks import ReconcileResponse
from trayflow.services.stage_registry import StageInfo, StageRegistry
from trayflow.services.time_phase import (
	RecipeParameters,
	StageTimestamps,
	expected_harvest_at,
	stage_duration_minutes,
)

logger = structlog.get_logger("trayflow.tasks")


class TaskScheduler:
	def __init__(self, db: AsyncSession, registry: StageRegistry | None = None):
		self.db = db
		self._registry = registry

	async def registry(self) -> StageRegistry:
		if self._registry is None:
			self._registry = await StageRegistry.load(self.db)
		return self._registry

	async def schedule_for_stage(
		self,
		crop: Crop,
		stage: StageInfo,
		recipe: RecipeParameters,
	) -> list[CropTask]:
		"""Create the tasks owed to ``crop`` for its residency in ``stage``."""
		registry = await self.registry()
		if registry.is_terminal(stage.code):
			return []

		timestamps = StageTimestamps.from_crop(crop)
		entered_at = timestamps.for_stage(stage.code)
		if entered_at is None:
			logger.warning("crop_task_entry_missing", crop_id=str(crop.id), stage=stage.code)
			return []

		# Re-entering a stage replaces whatever is still pending for it.
		await self.dismiss_for_stage(crop.id, stage.code)

		base_details: dict[str, Any] = {
			"stage": stage.code,
			"stage_entered_at": entered_at.isoformat(),
			"tray_number": crop.tray_number,
		}
		final_growth = registry.is_final_growth_stage(stage.code)
		tasks: list[CropTask] = []

		duration = stage_duration_minutes(stage.code, recipe)
		if duration is None:
			logger.warning("crop_task_duration_missing", crop_id=str(crop.id), stage=stage.code)
		else:
			end_at = entered_at + timedelta(minutes=duration)
			target = registry.next(stage.code)
			tasks.append(
				self._build(
					crop,
					TaskTypeEnum.end_stage,
					stage.code,
					end_at,
					{**base_details, "target_stage": target.code if target else None},
				)
			)
			if final_growth and recipe.suspend_water_hours > 0:
				suspend_at = max(entered_at, end_at - timedelta(hours=recipe.suspend_water_hours))
				tasks.append(
					self._build(
						crop,
						TaskTypeEnum.suspend_watering,
						stage.code,
						suspend_at,
						{**base_details, "suspend_water_hours": recipe.suspend_water_hours},
					)
				)

		if final_growth:
			harvest_at = expected_harvest_at(timestamps, recipe)
			if harvest_at is not None:
				tasks.append(
					self._build(crop, TaskTypeEnum.expected_harvest, stage.code, harvest_at, base_details)
				)

		self.db.add_all(tasks)
		logger.info(
			"crop_tasks_scheduled",
			crop_id=str(crop.id),
			stage=stage.code,
			task_types=[task.task_type.value for task in tasks],
		)
		return tasks

	async def dismiss_for_stage(self, crop_id: uuid.UUID, stage_code: str) -> int:
		rows = await self.db.execute(
			select(CropTask).where(
				CropTask.crop_id == crop_id,
				CropTask.stage_code == stage_code,
				CropTask.status == TaskStatusEnum.pending,
			)
		)
		tasks = list(rows.scalars().all())
		for task in tasks:
			task.status = TaskStatusEnum.dismissed
		return len(tasks)

	async def due_tasks(self, now: datetime, limit: int | None = None) -> list[CropTask]:
		stmt = (
			select(CropTask)
			.where(CropTask.status == TaskStatusEnum.pending, CropTask.scheduled_at <= now)
			.order_by(CropTask.scheduled_at.asc())
			.limit(limit if limit is not None else get_settings().due_task_sweep_limit)
		)
		rows = await self.db.execute(stmt)
		return list(rows.scalars().all())

	async def list_for_crop(self, crop_id: uuid.UUID) -> list[CropTask]:
		rows = await self.db.execute(
			select(CropTask).where(CropTask.crop_id == crop_id).order_by(CropTask.scheduled_at.asc())
		)
		return list(rows.scalars().all())

	async def trigger(self, task_id: uuid.UUID, at: datetime | None = None) -> CropTask:
		"""Mark a pending task triggered; any other status is left untouched."""
		task = await self._require_task(task_id, for_update=True)
		if task.status != TaskStatusEnum.pending:
			logger.info("crop_task_trigger_noop", task_id=str(task_id), status=task.status.value)
			return task

		at = at or datetime.now(UTC)
		task.status = TaskStatusEnum.triggered
		task.triggered_at = at

		if task.task_type == TaskTypeEnum.suspend_watering:
			crop = await self.db.get(Crop, task.crop_id)
			if crop is not None and crop.watering_suspended_at is None:
				crop.watering_suspended_at = at

		await self.db.flush()
		logger.info("crop_task_triggered", task_id=str(task_id), task_type=task.task_type.value)
		return task

	async def dismiss(self, task_id: uuid.UUID) -> CropTask:
		task = await self._require_task(task_id)
		if task.status == TaskStatusEnum.pending:
			task.status = TaskStatusEnum.dismissed
			await self.db.flush()
		return task

	async def mark_error(self, task_id: uuid.UUID, message: str) -> CropTask:
		task = await self._require_task(task_id)
		if task.status == TaskStatusEnum.pending:
			task.status = TaskStatusEnum.error
			task.error = message
			await self.db.flush()
			logger.warning("crop_task_failed", task_id=str(task_id), error=message)
		return task

	async def reconcile(self, now: datetime | None = None) -> ReconcileResponse:
		"""Schedule tasks for active crops whose current stage residency has none.

		Returns how many crops were scanned, how many got new tasks and how
		many pending tasks are due as of ``now``.
		"""
		now = now or datetime.now(UTC)
		registry = await self.registry()
		rows = await self.db.execute(
			select(Crop).where(Crop.current_stage_id != registry.terminal.id)
		)
		crops = list(rows.scalars().all())
		if not crops:
			return ReconcileResponse(scanned=0, scheduled=0, due=await self._count_due(now))

		# A residency with any task, of any type or status, is covered.
		task_rows = await self.db.execute(
			select(CropTask).where(CropTask.crop_id.in_([crop.id for crop in crops]))
		)
		covered: dict[uuid.UUID, set[tuple[str, str]]] = defaultdict(set)
		for task in task_rows.scalars().all():
			covered[task.crop_id].add((task.stage_code, str(task.details.get("stage_entered_at"))))

		recipe_rows = await self.db.execute(
			select(Recipe).where(Recipe.id.in_({crop.recipe_id for crop in crops}))
		)
		recipes = {recipe.id: RecipeParameters.from_recipe(recipe) for recipe in recipe_rows.scalars().all()}

		scheduled = 0
		for crop in crops:
			stage = registry.by_id(crop.current_stage_id)
			entered_at = StageTimestamps.from_crop(crop).for_stage(stage.code)
			if entered_at is None or crop.recipe_id not in recipes:
				continue
			if (stage.code, entered_at.isoformat()) in covered[crop.id]:
				continue
			created = await self.schedule_for_stage(crop, stage, recipes[crop.recipe_id])
			if created:
				scheduled += 1

		await self.db.flush()
		due = await self._count_due(now)
		logger.info("crop_tasks_reconciled", scanned=len(crops), scheduled=scheduled, due=due)
		return ReconcileResponse(scanned=len(crops), scheduled=scheduled, due=due)

	async def _count_due(self, now: datetime) -> int:
		count = await self.db.scalar(
			select(func.count())
			.select_from(CropTask)
			.where(CropTask.status == TaskStatusEnum.pending, CropTask.scheduled_at <= now)
		)
		return int(count or 0)

	async def _require_task(self, task_id: uuid.UUID, *, for_update: bool = False) -> CropTask:
		stmt = select(CropTask).where(CropTask.id == task_id)
		if for_update:
			# Concurrent deliveries of the same task serialize on the row.
			stmt = stmt.with_for_update().execution_options(populate_existing=True)
		task = (await self.db.execute(stmt)).scalar_one_or_none()
		if task is None:
			raise UnknownTaskError(task_id)
		return task

	@staticmethod
	def _build(
		crop: Crop,
		task_type: TaskTypeEnum,
		stage_code: str,
		scheduled_at: datetime,
		details: dict[str, Any],
	) -> CropTask:
		return CropTask(
			id=uuid.uuid4(),
			crop_id=crop.id,
			batch_id=crop.batch_id,
			recipe_id=crop.recipe_id,
			task_type=task_type,
			stage_code=stage_code,
			scheduled_at=scheduled_at,
			status=TaskStatusEnum.pending,
			details=dict(details),
		)
