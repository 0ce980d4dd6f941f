from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.config import Settings
from trayflow.errors import MissingReasonError, TransitionBusyError, UnknownBatchError
from trayflow.models.crops import Crop, CropStageHistory
from trayflow.models.enums import TaskStatusEnum, TaskTypeEnum, TransitionFailureCode, TransitionTypeEnum
from trayflow.models.tasks import CropTask
from trayflow.models.transitions import CropStageTransition
from trayflow.services import locks
from trayflow.services.batch_service import BatchService
from trayflow.services.locks import BatchLockManager
from trayflow.services.stage_registry import StageRegistry
from trayflow.services.transition_service import TransitionService

T0 = datetime(2025, 1, 1, 8, 0, tzinfo=UTC)


async def _crops(db: AsyncSession, batch_id: uuid.UUID) -> list[Crop]:
	rows = await db.execute(select(Crop).where(Crop.batch_id == batch_id).order_by(Crop.tray_number))
	return list(rows.scalars().all())


async def _audit_count(db: AsyncSession) -> int:
	return int(await db.scalar(select(func.count()).select_from(CropStageTransition)) or 0)


@pytest.mark.asyncio
async def test_bulk_advance_reports_partial_success(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=4, stage_code="light")
	crops = await _crops(db_session, batch.id)
	service = TransitionService(db_session)

	first = await service.advance([crops[0].id], at=T0 + timedelta(days=5))
	assert first.succeeded_count == 1
	assert first.to_stage == "harvested"

	result = await service.bulk_advance(batch.id, at=T0 + timedelta(days=6))

	assert result.type == TransitionTypeEnum.bulk_advance
	assert result.crop_count == 4
	assert result.succeeded_count == 3
	assert result.failed_count == 1
	assert result.failed_crops[0].crop_id == crops[0].id
	assert result.failed_crops[0].code == TransitionFailureCode.no_next_stage
	assert result.from_stage == "light"
	assert result.to_stage == "harvested"
	assert any("mixed stages" in warning for warning in result.validation_warnings)

	audit = await db_session.get(CropStageTransition, result.transition_id)
	assert audit is not None
	assert audit.batch_id == batch.id
	assert audit.succeeded_count + audit.failed_count == audit.crop_count
	assert audit.failed_crops[0]["code"] == "no_next_stage"
	assert len(audit.metadata_["outcomes"]) == 4


@pytest.mark.asyncio
async def test_advance_chain_leaves_one_open_history_row(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=1)
	(crop,) = await _crops(db_session, batch.id)
	service = TransitionService(db_session)

	for day in range(1, 5):
		result = await service.advance([crop.id], at=T0 + timedelta(days=day * 3))
		assert result.succeeded_count == 1

	history = await BatchService(db_session).crop_history(crop.id)
	assert len(history) == 5
	assert [row.exited_at is None for row in history] == [False, False, False, False, True]
	for earlier, later in zip(history, history[1:]):
		assert earlier.exited_at == later.entered_at

	refreshed = await db_session.get(Crop, crop.id)
	assert refreshed.soaking_at == T0
	assert refreshed.germination_at == T0 + timedelta(days=3)
	assert refreshed.harvested_at == T0 + timedelta(days=12)
	assert await _audit_count(db_session) == 4


@pytest.mark.asyncio
async def test_revert_restores_previous_stage_and_clears_timestamps(
	db_session, recipe_factory, batch_factory, registry: StageRegistry
) -> None:
	recipe = await recipe_factory(seed_soak_hours=0.0)
	batch = await batch_factory(recipe, tray_count=1)
	(crop,) = await _crops(db_session, batch.id)
	service = TransitionService(db_session)
	await service.advance([crop.id], at=T0 + timedelta(days=3))
	await service.advance([crop.id], at=T0 + timedelta(days=5))

	result = await service.revert([crop.id], reason="Moved under lights too soon", at=T0 + timedelta(days=6))

	assert result.succeeded_count == 1
	assert result.from_stage == "light"
	assert result.to_stage == "blackout"
	assert result.reason == "Moved under lights too soon"

	refreshed = await db_session.get(Crop, crop.id)
	assert refreshed.current_stage_id == registry.get("blackout").id
	assert refreshed.light_at is None
	assert refreshed.blackout_at == T0 + timedelta(days=3)

	history = await BatchService(db_session).crop_history(crop.id)
	open_rows = [row for row in history if row.exited_at is None]
	assert len(open_rows) == 1
	assert open_rows[0].stage_id == registry.get("blackout").id
	assert open_rows[0].entered_at == T0 + timedelta(days=3)
	assert open_rows[0].notes == "Reverted from light: Moved under lights too soon"

	pending = (
		await db_session.execute(
			select(CropTask).where(CropTask.crop_id == crop.id, CropTask.status == TaskStatusEnum.pending)
		)
	).scalars().all()
	assert {task.stage_code for task in pending} == {"blackout"}


@pytest.mark.asyncio
async def test_revert_out_of_terminal_warns(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=1, stage_code="light")
	(crop,) = await _crops(db_session, batch.id)
	service = TransitionService(db_session)
	await service.advance([crop.id], at=T0 + timedelta(days=5))

	result = await service.revert([crop.id], reason="Cut the wrong rack", at=T0 + timedelta(days=5, hours=1))

	assert result.succeeded_count == 1
	assert any("reverted out of harvested" in warning for warning in result.validation_warnings)
	refreshed = await db_session.get(Crop, crop.id)
	assert refreshed.harvested_at is None
	assert refreshed.light_at == T0


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", [None, "", "   "])
async def test_revert_without_reason_is_rejected_before_any_write(
	db_session, recipe_factory, batch_factory, reason
) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=2, stage_code="blackout")
	crops = await _crops(db_session, batch.id)
	service = TransitionService(db_session)

	with pytest.raises(MissingReasonError):
		await service.revert([crop.id for crop in crops], reason=reason)
	with pytest.raises(MissingReasonError):
		await service.bulk_revert(batch.id, reason=reason)

	assert await _audit_count(db_session) == 0


@pytest.mark.asyncio
async def test_revert_from_first_stage_fails_per_crop(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=2)
	crops = await _crops(db_session, batch.id)

	result = await TransitionService(db_session).revert([crop.id for crop in crops], reason="oops", at=T0)

	assert result.succeeded_count == 0
	assert result.failed_count == 2
	assert {failure.code for failure in result.failed_crops} == {TransitionFailureCode.no_previous_stage}


@pytest.mark.asyncio
async def test_unknown_crop_is_reported_not_raised(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=1)
	(crop,) = await _crops(db_session, batch.id)
	missing = uuid.uuid4()

	result = await TransitionService(db_session).advance([crop.id, missing], at=T0 + timedelta(days=1))

	assert result.crop_count == 2
	assert result.succeeded_count == 1
	assert result.failed_crops[0].crop_id == missing
	assert result.failed_crops[0].code == TransitionFailureCode.unknown_crop


@pytest.mark.asyncio
async def test_transition_before_stage_entry_is_out_of_order(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=1, stage_code="germination")
	(crop,) = await _crops(db_session, batch.id)

	result = await TransitionService(db_session).advance([crop.id], at=T0 - timedelta(hours=1))

	assert result.succeeded_count == 0
	assert result.failed_crops[0].code == TransitionFailureCode.out_of_order_timestamp
	refreshed = await db_session.get(Crop, crop.id)
	assert refreshed.blackout_at is None
	assert await _audit_count(db_session) == 1


@pytest.mark.asyncio
async def test_expected_stage_mismatch_is_stale(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=1, stage_code="germination")
	(crop,) = await _crops(db_session, batch.id)

	result = await TransitionService(db_session).advance(
		[crop.id], at=T0 + timedelta(days=1), expected_stage="blackout"
	)

	assert result.succeeded_count == 0
	assert result.failed_crops[0].code == TransitionFailureCode.stale_state


class RacingLockManager(BatchLockManager):
	"""Moves a crop to another stage just before the locks are granted."""

	def __init__(self, db: AsyncSession, crop_id: uuid.UUID, stage_id: uuid.UUID):
		super().__init__(None, timeout=1.0)
		self.db = db
		self.crop_id = crop_id
		self.stage_id = stage_id

	@asynccontextmanager
	async def hold(self, keys: Iterable[str]) -> AsyncIterator[list[str]]:
		await self.db.execute(
			update(Crop).where(Crop.id == self.crop_id).values(current_stage_id=self.stage_id)
		)
		async with super().hold(keys) as ordered:
			yield ordered


@pytest.mark.asyncio
async def test_crop_moved_while_waiting_for_lock_is_stale(
	db_session, recipe_factory, batch_factory, registry: StageRegistry
) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=2, stage_code="germination")
	moved, untouched = await _crops(db_session, batch.id)
	lock_manager = RacingLockManager(db_session, moved.id, registry.get("blackout").id)

	result = await TransitionService(db_session, lock_manager=lock_manager).advance(
		[moved.id, untouched.id], at=T0 + timedelta(days=3)
	)

	assert result.succeeded_count == 1
	assert result.failed_crops[0].crop_id == moved.id
	assert result.failed_crops[0].code == TransitionFailureCode.stale_state
	refreshed = await db_session.get(Crop, untouched.id)
	assert refreshed.current_stage_id == registry.get("blackout").id


@pytest.mark.asyncio
async def test_early_advance_and_batch_divergence_warnings(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=2, stage_code="light")
	first, _second = await _crops(db_session, batch.id)

	result = await TransitionService(db_session).advance([first.id], at=T0 + timedelta(days=1))

	assert result.succeeded_count == 1
	warnings = result.validation_warnings
	assert any(warning.startswith("light left early") for warning in warnings)
	assert any(f"batch {batch.id} has crops in 2 stages" in warning for warning in warnings)


@pytest.mark.asyncio
async def test_bulk_advance_filters_by_source_stage(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=3, stage_code="germination")
	crops = await _crops(db_session, batch.id)
	service = TransitionService(db_session)
	await service.advance([crops[0].id], at=T0 + timedelta(days=3))

	result = await service.bulk_advance(batch.id, from_stage="germination", at=T0 + timedelta(days=3))

	assert result.crop_count == 2
	assert result.succeeded_count == 2
	assert result.from_stage == "germination"
	assert result.to_stage == "blackout"


@pytest.mark.asyncio
async def test_bulk_on_unknown_batch_raises(db_session) -> None:
	with pytest.raises(UnknownBatchError):
		await TransitionService(db_session).bulk_advance(uuid.uuid4())


@pytest.mark.asyncio
async def test_bulk_advance_in_small_chunks(db_session, recipe_factory, batch_factory, monkeypatch) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=5, stage_code="germination")
	service = TransitionService(db_session)
	monkeypatch.setattr(service.settings, "transition_chunk_size", 2)

	result = await service.bulk_advance(batch.id, at=T0 + timedelta(days=3))

	assert result.succeeded_count == 5
	open_rows = await db_session.scalar(
		select(func.count())
		.select_from(CropStageHistory)
		.where(CropStageHistory.batch_id == batch.id, CropStageHistory.exited_at.is_(None))
	)
	assert open_rows == 5


@pytest.mark.asyncio
async def test_bulk_advance_with_zero_chunk_size_still_covers_every_crop(
	db_session, recipe_factory, batch_factory, monkeypatch
) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=3, stage_code="germination")
	service = TransitionService(db_session)
	monkeypatch.setattr(service.settings, "transition_chunk_size", 0)

	result = await service.bulk_advance(batch.id, at=T0 + timedelta(days=3))

	assert result.crop_count == 3
	assert result.succeeded_count + result.failed_count == result.crop_count
	assert result.succeeded_count == 3


def test_chunk_size_must_be_positive() -> None:
	with pytest.raises(ValidationError):
		Settings(transition_chunk_size=0)


@pytest.mark.asyncio
async def test_audit_rows_are_write_once(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=1)
	(crop,) = await _crops(db_session, batch.id)
	result = await TransitionService(db_session).advance([crop.id], at=T0 + timedelta(days=1))

	audit = await db_session.get(CropStageTransition, result.transition_id)
	audit.reason = "edited later"
	with pytest.raises(ValueError, match="append-only"):
		await db_session.flush()
	await db_session.rollback()


@pytest.mark.asyncio
async def test_closed_history_rows_cannot_be_reopened(db_session, recipe_factory, batch_factory) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=1)
	(crop,) = await _crops(db_session, batch.id)
	await TransitionService(db_session).advance([crop.id], at=T0 + timedelta(days=1))

	history = await BatchService(db_session).crop_history(crop.id)
	history[0].exited_at = T0 + timedelta(days=2)
	with pytest.raises(ValueError, match="closed once"):
		await db_session.flush()
	await db_session.rollback()


@pytest.mark.asyncio
async def test_transition_event_is_published_and_redis_lock_used(
	db_session, recipe_factory, batch_factory, fake_redis
) -> None:
	recipe = await recipe_factory()
	batch = await batch_factory(recipe, tray_count=2)

	result = await TransitionService(db_session, fake_redis).bulk_advance(
		batch.id, at=T0 + timedelta(days=1), source="rack-scanner"
	)

	fake_redis.publish.assert_awaited_once()
	channel, raw = fake_redis.publish.await_args.args
	payload = json.loads(raw)
	assert channel == "trayflow:transitions"
	assert payload["event_type"] == "crop_stage_transition"
	assert payload["transition_id"] == str(result.transition_id)
	assert payload["succeeded_count"] == 2
	assert [lock.name for lock in fake_redis.locks] == [f"trayflow:lock:batch:{batch.id}"]
	fake_redis.locks[0].release.assert_awaited_once()

	audit = await db_session.get(CropStageTransition, result.transition_id)
	assert audit.source == "rack-scanner"


@pytest.mark.asyncio
async def test_suspend_watering_task_scheduled_on_entering_final_growth_stage(
	db_session, recipe_factory, batch_factory
) -> None:
	recipe = await recipe_factory(seed_soak_hours=0.0)
	batch = await batch_factory(recipe, tray_count=1, stage_code="blackout")
	(crop,) = await _crops(db_session, batch.id)

	await TransitionService(db_session).advance([crop.id], at=T0 + timedelta(days=2))

	tasks = {
		task.task_type: task
		for task in (
			await db_session.execute(
				select(CropTask).where(CropTask.crop_id == crop.id, CropTask.status == TaskStatusEnum.pending)
			)
		).scalars()
	}
	assert tasks[TaskTypeEnum.end_stage].scheduled_at == T0 + timedelta(days=7)
	assert tasks[TaskTypeEnum.suspend_watering].scheduled_at == T0 + timedelta(days=6, hours=12)
	assert tasks[TaskTypeEnum.expected_harvest].stage_code == "light"


@pytest.mark.asyncio
async def test_lock_timeout_raises_busy() -> None:
	manager = BatchLockManager(timeout=0.05)
	key = f"batch:{uuid.uuid4()}"
	async with manager.hold([key]):
		with pytest.raises(TransitionBusyError):
			async with manager.hold([key]):
				pass


@pytest.mark.asyncio
async def test_redis_lock_refusal_raises_busy(fake_redis) -> None:
	original = fake_redis.lock

	def refusing_lock(name, timeout=None, blocking_timeout=None):
		lock = original(name, timeout=timeout, blocking_timeout=blocking_timeout)
		lock.acquire.return_value = False
		return lock

	fake_redis.lock = refusing_lock
	manager = BatchLockManager(fake_redis, timeout=0.05)

	with pytest.raises(TransitionBusyError):
		async with manager.hold([f"batch:{uuid.uuid4()}"]):
			pass


@pytest.mark.asyncio
async def test_local_locks_are_dropped_once_released() -> None:
	manager = BatchLockManager(timeout=1.0)
	key = f"batch:{uuid.uuid4()}"
	crop_key = f"crop:{uuid.uuid4()}"
	entered = asyncio.Event()

	async def second_holder() -> None:
		async with manager.hold([key]):
			entered.set()

	async with manager.hold([key, crop_key]):
		waiter = asyncio.create_task(second_holder())
		await asyncio.sleep(0)
		assert locks._local_users[key] == 2

	await waiter
	assert entered.is_set()
	assert key not in locks._local_locks
	assert key not in locks._local_users
	assert crop_key not in locks._local_locks


@pytest.mark.asyncio
async def test_timed_out_waiter_does_not_leak_lock_entry() -> None:
	manager = BatchLockManager(timeout=0.05)
	key = f"batch:{uuid.uuid4()}"
	async with manager.hold([key]):
		with pytest.raises(TransitionBusyError):
			async with manager.hold([key]):
				pass
		assert locks._local_users[key] == 1

	assert key not in locks._local_locks
