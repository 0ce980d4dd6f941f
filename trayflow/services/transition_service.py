"""Stage transition engine: advance and revert trays individually or per batch.

Every call resolves its crop set under the batch locks, evaluates each crop
independently, mutates the ones that pass and writes exactly one
``CropStageTransition`` audit row summarizing the whole call.  Per-crop
problems never raise; they are returned as ``FailedCrop`` entries.
"""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.config import get_settings
from trayflow.errors import MissingReasonError, UnknownBatchError
from trayflow.models.crops import STAGE_TIMESTAMP_FIELDS, Crop, CropBatch, CropStageHistory
from trayflow.models.enums import TransitionFailureCode, TransitionTypeEnum
from trayflow.models.recipes import Recipe
from trayflow.models.transitions import CropStageTransition
from trayflow.schemas.transitions import CropOutcome, FailedCrop, TransitionResult
from trayflow.services.locks import BatchLockManager, lock_key
from trayflow.services.stage_registry import StageInfo, StageRegistry
from trayflow.services.task_scheduler import TaskScheduler
from trayflow.services.time_phase import (
	RecipeParameters,
	StageTimestamps,
	elapsed_minutes,
	format_duration,
	stage_duration_minutes,
)

logger = structlog.get_logger("trayflow.transitions")

_ADVANCING = (TransitionTypeEnum.advance, TransitionTypeEnum.bulk_advance)


@dataclass(slots=True)
class _Operation:
	type: TransitionTypeEnum
	at: datetime
	actor_id: uuid.UUID | None
	reason: str | None
	source: str | None
	outcomes: list[CropOutcome] = field(default_factory=list)
	warnings: list[str] = field(default_factory=list)
	source_stages: set[str] = field(default_factory=set)
	batch_ids: set[uuid.UUID | None] = field(default_factory=set)

	@property
	def advancing(self) -> bool:
		return self.type in _ADVANCING

	def warn(self, message: str) -> None:
		if message not in self.warnings:
			self.warnings.append(message)

	def fail(
		self,
		crop_id: uuid.UUID,
		code: TransitionFailureCode,
		reason: str,
		from_stage: str | None = None,
	) -> None:
		self.outcomes.append(
			CropOutcome(crop_id=crop_id, ok=False, from_stage=from_stage, code=code, reason=reason)
		)

	def succeed(self, crop_id: uuid.UUID, from_stage: str, to_stage: str) -> None:
		self.outcomes.append(CropOutcome(crop_id=crop_id, ok=True, from_stage=from_stage, to_stage=to_stage))

	@property
	def failures(self) -> list[FailedCrop]:
		return [
			FailedCrop(crop_id=o.crop_id, code=o.code, reason=o.reason or "")
			for o in self.outcomes
			if not o.ok and o.code is not None
		]


def _normalize_at(at: datetime | None) -> datetime:
	if at is None:
		return datetime.now(UTC)
	if at.tzinfo is None:
		return at.replace(tzinfo=UTC)
	return at.astimezone(UTC)


def _require_reason(reason: str | None) -> str:
	if reason is None or not reason.strip():
		raise MissingReasonError()
	return reason.strip()


def _chunks(items: Sequence[Crop], size: int) -> Iterable[Sequence[Crop]]:
	size = max(1, size)
	for start in range(0, len(items), size):
		yield items[start : start + size]


class TransitionService:
	def __init__(
		self,
		db: AsyncSession,
		redis_client: Redis | None = None,
		*,
		lock_manager: BatchLockManager | None = None,
	):
		self.db = db
		self.redis_client = redis_client
		self.lock_manager = lock_manager or BatchLockManager(redis_client)
		self.settings = get_settings()

	async def advance(
		self,
		crop_ids: Iterable[uuid.UUID],
		*,
		at: datetime | None = None,
		actor_id: uuid.UUID | None = None,
		expected_stage: str | None = None,
		source: str | None = None,
	) -> TransitionResult:
		op = _Operation(TransitionTypeEnum.advance, _normalize_at(at), actor_id, None, source)
		return await self._run_for_crops(op, crop_ids, expected_stage)

	async def revert(
		self,
		crop_ids: Iterable[uuid.UUID],
		*,
		reason: str | None,
		at: datetime | None = None,
		actor_id: uuid.UUID | None = None,
		expected_stage: str | None = None,
		source: str | None = None,
	) -> TransitionResult:
		"""Move crops back one stage.  A blank reason rejects the whole call."""
		reason = _require_reason(reason)
		op = _Operation(TransitionTypeEnum.revert, _normalize_at(at), actor_id, reason, source)
		return await self._run_for_crops(op, crop_ids, expected_stage)

	async def bulk_advance(
		self,
		batch_id: uuid.UUID,
		*,
		from_stage: str | None = None,
		at: datetime | None = None,
		actor_id: uuid.UUID | None = None,
		source: str | None = None,
	) -> TransitionResult:
		op = _Operation(TransitionTypeEnum.bulk_advance, _normalize_at(at), actor_id, None, source)
		return await self._run_for_batch(op, batch_id, from_stage)

	async def bulk_revert(
		self,
		batch_id: uuid.UUID,
		*,
		reason: str | None,
		from_stage: str | None = None,
		at: datetime | None = None,
		actor_id: uuid.UUID | None = None,
		source: str | None = None,
	) -> TransitionResult:
		reason = _require_reason(reason)
		op = _Operation(TransitionTypeEnum.bulk_revert, _normalize_at(at), actor_id, reason, source)
		return await self._run_for_batch(op, batch_id, from_stage)

	async def _run_for_crops(
		self,
		op: _Operation,
		crop_ids: Iterable[uuid.UUID],
		expected_stage: str | None,
	) -> TransitionResult:
		registry = await StageRegistry.load(self.db)
		expected = registry.get(expected_stage) if expected_stage else None
		requested = list(dict.fromkeys(crop_ids))

		# Unlocked snapshot: decides which locks to take and detects moves
		# that happen while we wait for them.
		rows = await self.db.execute(
			select(Crop.id, Crop.batch_id, Crop.current_stage_id).where(Crop.id.in_(requested))
		)
		snapshot = {row.id: row for row in rows.all()}
		keys = [lock_key(row.batch_id, row.id) for row in snapshot.values()]

		async with self.lock_manager.hold(keys):
			crops = await self._lock_crops(select(Crop).where(Crop.id.in_(requested)))
			by_id = {crop.id: crop for crop in crops}

			ordered: list[Crop] = []
			for crop_id in requested:
				crop = by_id.get(crop_id)
				if crop is None:
					op.fail(crop_id, TransitionFailureCode.unknown_crop, f"Crop {crop_id} not found")
					continue
				seen = snapshot.get(crop_id)
				if expected is not None:
					seen_stage = expected.id
				else:
					seen_stage = seen.current_stage_id if seen is not None else crop.current_stage_id
				if crop.current_stage_id != seen_stage:
					current = registry.by_id(crop.current_stage_id).code
					op.fail(
						crop_id,
						TransitionFailureCode.stale_state,
						f"Crop moved to {current} before the transition could be applied",
						from_stage=current,
					)
					continue
				ordered.append(crop)

			batch_id = None
			found_batches = {crop.batch_id for crop in crops}
			if len(found_batches) == 1:
				batch_id = next(iter(found_batches))

			return await self._apply(op, registry, ordered, crop_count=len(requested), batch_id=batch_id)

	async def _run_for_batch(
		self,
		op: _Operation,
		batch_id: uuid.UUID,
		from_stage: str | None,
	) -> TransitionResult:
		registry = await StageRegistry.load(self.db)
		source = registry.get(from_stage) if from_stage else None
		batch = await self.db.get(CropBatch, batch_id)
		if batch is None:
			raise UnknownBatchError(batch_id)

		async with self.lock_manager.hold([lock_key(batch_id, batch_id)]):
			stmt = select(Crop).where(Crop.batch_id == batch_id)
			if source is not None:
				stmt = stmt.where(Crop.current_stage_id == source.id)
			crops = await self._lock_crops(stmt.order_by(Crop.tray_number, Crop.id))
			return await self._apply(op, registry, crops, crop_count=len(crops), batch_id=batch_id)

	async def _lock_crops(self, stmt) -> list[Crop]:
		# Re-read under the row locks; populate_existing discards any copy
		# the identity map picked up before the batch lock was held.
		result = await self.db.execute(
			stmt.with_for_update().execution_options(populate_existing=True)
		)
		return list(result.scalars().all())

	async def _apply(
		self,
		op: _Operation,
		registry: StageRegistry,
		crops: Sequence[Crop],
		*,
		crop_count: int,
		batch_id: uuid.UUID | None,
	) -> TransitionResult:
		recipes = await self._load_recipes(crops)
		scheduler = TaskScheduler(self.db, registry)

		for chunk in _chunks(crops, self.settings.transition_chunk_size):
			open_rows = await self._open_history(chunk)
			for crop in chunk:
				if op.advancing:
					await self._advance_one(op, registry, scheduler, crop, recipes, open_rows[crop.id])
				else:
					await self._revert_one(op, registry, scheduler, crop, recipes, open_rows[crop.id])
			await self.db.flush()

		await self._check_batch_divergence(op, registry)

		from_info = registry.least_advanced(op.source_stages)
		to_info: StageInfo | None = None
		if from_info is not None:
			to_info = registry.next(from_info.code) if op.advancing else registry.previous(from_info.code)
		if len(op.source_stages) > 1:
			op.warn(f"crops started from mixed stages: {', '.join(sorted(op.source_stages))}")

		failures = op.failures
		succeeded = sum(1 for outcome in op.outcomes if outcome.ok)
		audit = CropStageTransition(
			id=uuid.uuid4(),
			type=op.type,
			batch_id=batch_id,
			crop_count=crop_count,
			from_stage_id=from_info.id if from_info else None,
			to_stage_id=to_info.id if to_info else None,
			transition_at=op.at,
			user_id=op.actor_id,
			reason=op.reason,
			succeeded_count=succeeded,
			failed_count=len(failures),
			failed_crops=[failure.model_dump(mode="json") for failure in failures],
			metadata_={
				"validation_warnings": list(op.warnings),
				"outcomes": [outcome.model_dump(mode="json") for outcome in op.outcomes],
			},
			source=op.source,
		)
		self.db.add(audit)
		await self.db.flush()
		await self.db.commit()

		logger.info(
			"crop_stage_transition",
			transition_id=str(audit.id),
			type=op.type.value,
			batch_id=str(batch_id) if batch_id else None,
			crop_count=crop_count,
			succeeded=succeeded,
			failed=len(failures),
			warnings=len(op.warnings),
		)

		result = TransitionResult(
			transition_id=audit.id,
			type=op.type,
			batch_id=batch_id,
			crop_count=crop_count,
			succeeded_count=succeeded,
			failed_count=len(failures),
			from_stage=from_info.code if from_info else None,
			to_stage=to_info.code if to_info else None,
			transition_at=op.at,
			reason=op.reason,
			failed_crops=failures,
			validation_warnings=list(op.warnings),
			outcomes=list(op.outcomes),
		)
		await self._publish(result)
		return result

	async def _advance_one(
		self,
		op: _Operation,
		registry: StageRegistry,
		scheduler: TaskScheduler,
		crop: Crop,
		recipes: dict[uuid.UUID, RecipeParameters],
		open_rows: list[CropStageHistory],
	) -> None:
		current = registry.by_id(crop.current_stage_id)
		op.source_stages.add(current.code)
		target = registry.next(current.code)
		if target is None:
			op.fail(
				crop.id,
				TransitionFailureCode.no_next_stage,
				f"Crop is already in the terminal stage {current.code}",
				from_stage=current.code,
			)
			return

		timestamps = StageTimestamps.from_crop(crop)
		entered_at = timestamps.for_stage(current.code)
		if entered_at is not None and op.at < entered_at:
			op.fail(
				crop.id,
				TransitionFailureCode.out_of_order_timestamp,
				f"Transition time precedes entry into {current.code} at {entered_at.isoformat()}",
				from_stage=current.code,
			)
			return

		recipe = recipes.get(crop.recipe_id, RecipeParameters())
		if crop.watering_suspended_at is not None:
			op.warn(f"crop {self._label(crop)} already watering-suspended")
		duration = stage_duration_minutes(current.code, recipe)
		if duration is None:
			op.warn(f"recipe missing duration for stage {current.code}")
		elif entered_at is not None:
			age = elapsed_minutes(entered_at, op.at)
			if age < duration * self.settings.early_advance_warning_ratio:
				op.warn(
					f"{current.code} left early: {format_duration(age)} of expected "
					f"{format_duration(duration)}"
				)

		self._set_stage_timestamp(op, crop, target, op.at)
		crop.current_stage_id = target.id
		self._close_history(open_rows, op.at)
		self.db.add(
			CropStageHistory(
				id=uuid.uuid4(),
				crop_id=crop.id,
				batch_id=crop.batch_id,
				stage_id=target.id,
				entered_at=op.at,
				created_by=op.actor_id,
			)
		)

		await scheduler.dismiss_for_stage(crop.id, current.code)
		await scheduler.schedule_for_stage(crop, target, recipe)
		op.batch_ids.add(crop.batch_id)
		op.succeed(crop.id, current.code, target.code)

	async def _revert_one(
		self,
		op: _Operation,
		registry: StageRegistry,
		scheduler: TaskScheduler,
		crop: Crop,
		recipes: dict[uuid.UUID, RecipeParameters],
		open_rows: list[CropStageHistory],
	) -> None:
		current = registry.by_id(crop.current_stage_id)
		op.source_stages.add(current.code)
		target = registry.previous(current.code)
		if target is None:
			op.fail(
				crop.id,
				TransitionFailureCode.no_previous_stage,
				f"Crop is already in the first stage {current.code}",
				from_stage=current.code,
			)
			return

		entered_at = StageTimestamps.from_crop(crop).for_stage(current.code)
		if entered_at is not None and op.at < entered_at:
			op.fail(
				crop.id,
				TransitionFailureCode.out_of_order_timestamp,
				f"Transition time precedes entry into {current.code} at {entered_at.isoformat()}",
				from_stage=current.code,
			)
			return

		if registry.is_terminal(current.code):
			op.warn(f"crop {self._label(crop)} reverted out of {current.code}")

		# Clear the stage being left and anything recorded after it.
		for code, column in STAGE_TIMESTAMP_FIELDS.items():
			stage = registry.find(code)
			if stage is None or stage.sort_order < current.sort_order:
				continue
			if getattr(crop, column) is not None:
				setattr(crop, column, None)
				if code != current.code:
					op.warn(f"cleared {code} timestamp on crop {self._label(crop)}")

		reentered_at = StageTimestamps.from_crop(crop).for_stage(target.code)
		if reentered_at is None:
			op.warn(f"missing entry timestamp for stage {target.code}; using transition time")
			reentered_at = op.at
			self._set_stage_timestamp(op, crop, target, reentered_at)
		crop.current_stage_id = target.id

		self._close_history(open_rows, op.at)
		self.db.add(
			CropStageHistory(
				id=uuid.uuid4(),
				crop_id=crop.id,
				batch_id=crop.batch_id,
				stage_id=target.id,
				entered_at=reentered_at,
				notes=f"Reverted from {current.code}: {op.reason}",
				created_by=op.actor_id,
			)
		)

		recipe = recipes.get(crop.recipe_id, RecipeParameters())
		await scheduler.dismiss_for_stage(crop.id, current.code)
		await scheduler.schedule_for_stage(crop, target, recipe)
		op.batch_ids.add(crop.batch_id)
		op.succeed(crop.id, current.code, target.code)

	@staticmethod
	def _set_stage_timestamp(op: _Operation, crop: Crop, stage: StageInfo, value: datetime) -> None:
		column = STAGE_TIMESTAMP_FIELDS.get(stage.code)
		if column is None:
			op.warn(f"stage {stage.code} has no entry timestamp column")
			return
		setattr(crop, column, value)

	@staticmethod
	def _close_history(open_rows: list[CropStageHistory], at: datetime) -> None:
		for row in open_rows:
			row.exited_at = at
		open_rows.clear()

	@staticmethod
	def _label(crop: Crop) -> str:
		return crop.tray_number or str(crop.id)

	async def _load_recipes(self, crops: Sequence[Crop]) -> dict[uuid.UUID, RecipeParameters]:
		recipe_ids = {crop.recipe_id for crop in crops}
		if not recipe_ids:
			return {}
		rows = await self.db.execute(select(Recipe).where(Recipe.id.in_(recipe_ids)))
		return {recipe.id: RecipeParameters.from_recipe(recipe) for recipe in rows.scalars().all()}

	async def _open_history(self, crops: Sequence[Crop]) -> dict[uuid.UUID, list[CropStageHistory]]:
		grouped: dict[uuid.UUID, list[CropStageHistory]] = defaultdict(list)
		if not crops:
			return grouped
		rows = await self.db.execute(
			select(CropStageHistory).where(
				CropStageHistory.crop_id.in_([crop.id for crop in crops]),
				CropStageHistory.exited_at.is_(None),
			)
		)
		for row in rows.scalars().all():
			grouped[row.crop_id].append(row)
		return grouped

	async def _check_batch_divergence(self, op: _Operation, registry: StageRegistry) -> None:
		for batch_id in sorted((b for b in op.batch_ids if b is not None), key=str):
			rows = await self.db.execute(
				select(Crop.current_stage_id, func.count())
				.where(Crop.batch_id == batch_id)
				.group_by(Crop.current_stage_id)
			)
			stages = sorted(registry.by_id(stage_id).code for stage_id, _ in rows.all())
			if len(stages) > 1:
				op.warn(f"batch {batch_id} has crops in {len(stages)} stages: {', '.join(stages)}")

			recipe_count = await self.db.scalar(
				select(func.count(func.distinct(Crop.recipe_id))).where(Crop.batch_id == batch_id)
			)
			if recipe_count and recipe_count > 1:
				op.warn(f"batch {batch_id} mixes {recipe_count} recipes")

	async def _publish(self, result: TransitionResult) -> None:
		if self.redis_client is None:
			return
		payload: dict[str, Any] = {
			"event_type": "crop_stage_transition",
			**result.model_dump(mode="json", exclude={"outcomes"}),
		}
		try:
			await self.redis_client.publish(self.settings.transition_event_channel, json.dumps(payload))
		except RedisError as exc:
			logger.warning("transition_publish_failed", transition_id=str(result.transition_id), error=str(exc))
