"""Ordered stage catalog: lookups, successor/predecessor and default seeding."""

from __future__ import annotations

import bisect
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.config import get_settings
from trayflow.errors import StageRegistryError, UnknownStageError
from trayflow.models.stages import CropStage

logger = structlog.get_logger("trayflow.stages")

DEFAULT_STAGES: tuple[dict[str, object], ...] = (
	{"code": "soaking", "name": "Soaking", "sort_order": 1, "color": "#5dade2",
	 "description": "Seeds soaking before planting"},
	{"code": "germination", "name": "Germination", "sort_order": 2, "color": "#f4d03f",
	 "description": "Seeds sprouting under weight"},
	{"code": "blackout", "name": "Blackout", "sort_order": 3, "color": "#566573",
	 "description": "Covered trays stretching in darkness"},
	{"code": "light", "name": "Light", "sort_order": 4, "color": "#58d68d",
	 "description": "Greening under lights"},
	{"code": "harvested", "name": "Harvested", "sort_order": 5, "color": "#af7ac5",
	 "description": "Cut and removed from the rack"},
)


@dataclass(slots=True, frozen=True)
class StageInfo:
	"""Detached, read-only view of a ``CropStage`` row."""

	id: uuid.UUID
	code: str
	name: str
	sort_order: int
	is_active: bool = True

	@classmethod
	def from_row(cls, row: CropStage) -> StageInfo:
		return cls(
			id=row.id,
			code=row.code,
			name=row.name,
			sort_order=row.sort_order,
			is_active=row.is_active,
		)


class StageRegistry:
	"""Total order over the active stages.

	``next`` and ``previous`` compare by ``sort_order`` so a stage that has
	since been deactivated still resolves to its active neighbours.  The
	last active stage must be the terminal stage.
	"""

	def __init__(self, stages: Iterable[StageInfo], terminal_code: str | None = None):
		all_stages = list(stages)
		self._by_code = {stage.code: stage for stage in all_stages}
		self._by_id = {stage.id: stage for stage in all_stages}
		if len(self._by_code) != len(all_stages):
			raise StageRegistryError("stage codes must be unique")

		self._ordered = sorted((s for s in all_stages if s.is_active), key=lambda s: s.sort_order)
		self._orders = [stage.sort_order for stage in self._ordered]
		if len(set(self._orders)) != len(self._orders):
			raise StageRegistryError("active stages must have distinct sort_order values")
		if not self._ordered:
			raise StageRegistryError("at least one active stage is required")

		terminal_code = terminal_code or get_settings().terminal_stage_code
		if self._ordered[-1].code != terminal_code:
			raise StageRegistryError(
				f"terminal stage {terminal_code!r} must be the last active stage, "
				f"found {self._ordered[-1].code!r}"
			)
		self.terminal_code = terminal_code

	@classmethod
	async def load(cls, db: AsyncSession) -> StageRegistry:
		rows = await db.execute(select(CropStage).order_by(CropStage.sort_order))
		return cls(StageInfo.from_row(row) for row in rows.scalars().all())

	@property
	def stages(self) -> Sequence[StageInfo]:
		return tuple(self._ordered)

	@property
	def first(self) -> StageInfo:
		return self._ordered[0]

	@property
	def terminal(self) -> StageInfo:
		return self._ordered[-1]

	def get(self, code: str) -> StageInfo:
		stage = self._by_code.get(code)
		if stage is None:
			raise UnknownStageError(code)
		return stage

	def find(self, code: str) -> StageInfo | None:
		return self._by_code.get(code)

	def by_id(self, stage_id: uuid.UUID) -> StageInfo:
		stage = self._by_id.get(stage_id)
		if stage is None:
			raise UnknownStageError(stage_id)
		return stage

	def order_of(self, code: str) -> int:
		return self.get(code).sort_order

	def next(self, code: str) -> StageInfo | None:
		index = bisect.bisect_right(self._orders, self.order_of(code))
		if index >= len(self._ordered):
			return None
		return self._ordered[index]

	def previous(self, code: str) -> StageInfo | None:
		index = bisect.bisect_left(self._orders, self.order_of(code)) - 1
		if index < 0:
			return None
		return self._ordered[index]

	def is_terminal(self, code: str) -> bool:
		return code == self.terminal_code

	def is_final_growth_stage(self, code: str) -> bool:
		"""True for the stage immediately before the terminal stage."""
		successor = self.next(code)
		return successor is not None and successor.code == self.terminal_code

	def least_advanced(self, codes: Iterable[str]) -> StageInfo | None:
		candidates = [self.get(code) for code in codes]
		if not candidates:
			return None
		return min(candidates, key=lambda stage: stage.sort_order)


async def ensure_default_stages(db: AsyncSession) -> int:
	"""Insert the default catalog when the stage table is empty."""
	count = await db.scalar(select(func.count()).select_from(CropStage))
	if count:
		return 0

	db.add_all(CropStage(**values) for values in DEFAULT_STAGES)
	await db.flush()
	logger.info("crop_stages_seeded", count=len(DEFAULT_STAGES))
	return len(DEFAULT_STAGES)
