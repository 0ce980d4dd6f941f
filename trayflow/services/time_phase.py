"""Derived timing for crops and batches.

Everything here is a pure function of stage-entry timestamps, recipe
parameters and an explicit ``now``; nothing is persisted.  Batch views
collapse per-crop timestamps with ``MIN`` so a batch reports the timing
of its least-advanced tray.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any

from trayflow.models.crops import GROWTH_TIMESTAMP_FIELDS, STAGE_TIMESTAMP_FIELDS

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 24 * MINUTES_PER_HOUR

READY_TO_ADVANCE = "Ready to advance"
HARVESTED = "Harvested"


@dataclass(slots=True, frozen=True)
class RecipeParameters:
	"""Timing and yield inputs read from a recipe row."""

	seed_soak_hours: float | None = None
	germination_days: float | None = None
	blackout_days: float | None = None
	light_days: float | None = None
	days_to_maturity: float | None = None
	expected_yield_grams: float | None = None
	buffer_percentage: float = 0.0
	suspend_water_hours: float = 0.0

	@property
	def requires_soaking(self) -> bool:
		return (self.seed_soak_hours or 0) > 0

	@property
	def growth_days(self) -> float | None:
		offsets = (self.germination_days, self.blackout_days, self.light_days)
		if all(value is None for value in offsets):
			return None
		return float(sum(value or 0 for value in offsets))

	@classmethod
	def from_recipe(cls, recipe: Any) -> RecipeParameters:
		return cls(
			seed_soak_hours=recipe.seed_soak_hours,
			germination_days=recipe.germination_days,
			blackout_days=recipe.blackout_days,
			light_days=recipe.light_days,
			days_to_maturity=recipe.days_to_maturity,
			expected_yield_grams=recipe.expected_yield_grams,
			buffer_percentage=recipe.buffer_percentage or 0.0,
			suspend_water_hours=recipe.suspend_water_hours or 0.0,
		)


@dataclass(slots=True, frozen=True)
class StageTimestamps:
	soaking_at: datetime | None = None
	germination_at: datetime | None = None
	blackout_at: datetime | None = None
	light_at: datetime | None = None
	harvested_at: datetime | None = None

	@classmethod
	def from_crop(cls, crop: Any) -> StageTimestamps:
		return cls(**{f.name: getattr(crop, f.name) for f in fields(cls)})

	@classmethod
	def earliest_of(cls, items: Iterable[StageTimestamps]) -> StageTimestamps:
		"""Field-wise ``MIN`` across crops, ignoring unset values."""
		collected: dict[str, list[datetime]] = {f.name: [] for f in fields(cls)}
		for item in items:
			for name, values in collected.items():
				value = getattr(item, name)
				if value is not None:
					values.append(value)
		return cls(**{name: min(values) if values else None for name, values in collected.items()})

	def for_stage(self, stage_code: str) -> datetime | None:
		field_name = STAGE_TIMESTAMP_FIELDS.get(stage_code)
		if field_name is None:
			return None
		return getattr(self, field_name)

	def earliest_growth(self) -> datetime | None:
		values = [getattr(self, name) for name in GROWTH_TIMESTAMP_FIELDS]
		present = [value for value in values if value is not None]
		return min(present) if present else None


@dataclass(slots=True)
class TimePhase:
	stage_code: str
	stage_entered_at: datetime | None
	stage_age_minutes: int | None
	stage_age_display: str | None
	time_to_next_stage_minutes: int | None
	time_to_next_stage_display: str | None
	total_age_minutes: int | None
	total_age_display: str | None
	expected_harvest_at: datetime | None
	stage_status: str | None
	total_age_status: str
	warnings: list[str] = field(default_factory=list)

	@property
	def is_overdue(self) -> bool:
		return self.time_to_next_stage_minutes is not None and self.time_to_next_stage_minutes <= 0


def stage_duration_minutes(stage_code: str, recipe: RecipeParameters) -> int | None:
	"""Expected residency for a stage; ``None`` when the recipe omits it."""
	if stage_code == "soaking":
		if recipe.seed_soak_hours is None:
			return None
		return int(recipe.seed_soak_hours * MINUTES_PER_HOUR)

	days = {
		"germination": recipe.germination_days,
		"blackout": recipe.blackout_days,
		"light": recipe.light_days,
	}.get(stage_code)
	if days is None:
		return None
	return int(days * MINUTES_PER_DAY)


def elapsed_minutes(start: datetime, end: datetime) -> int:
	"""Whole minutes from ``start`` to ``end``, truncated toward zero."""
	return int((end - start).total_seconds() / 60)


def format_duration(minutes: int) -> str:
	minutes = max(0, int(minutes))
	hours, remainder = divmod(minutes, MINUTES_PER_HOUR)
	if hours >= 24:
		days, hours = divmod(hours, 24)
		return f"{days}d {hours}h"
	if hours >= 1:
		return f"{hours}h {remainder}m"
	return f"{remainder}m"


def expected_harvest_at(timestamps: StageTimestamps, recipe: RecipeParameters) -> datetime | None:
	earliest = timestamps.earliest_growth()
	if earliest is None:
		return None
	days = recipe.growth_days
	if days is None:
		days = recipe.days_to_maturity
	if days is None:
		return None
	return earliest + timedelta(days=days)


def _stage_status(age: int | None, duration: int | None) -> str | None:
	if age is None or duration is None:
		return None
	if duration <= 0:
		return "Overdue"
	percent = age / duration * 100
	if percent < 90:
		return "On Track"
	if percent < 110:
		return "Due Soon"
	return "Overdue"


def _total_age_status(total_age: int | None, recipe: RecipeParameters) -> str:
	if not recipe.days_to_maturity:
		return "No maturity target"
	if total_age is None:
		return "Not started"
	percent = total_age / (recipe.days_to_maturity * MINUTES_PER_DAY) * 100
	if percent < 80:
		return "Growing"
	if percent < 95:
		return "Nearly Ready"
	if percent < 105:
		return "Ready to Harvest"
	return "Past Due"


def calculate_time_phase(
	stage_code: str,
	timestamps: StageTimestamps,
	recipe: RecipeParameters,
	now: datetime,
	*,
	terminal_code: str = "harvested",
) -> TimePhase:
	"""Derive stage age, countdown, total age and expected harvest."""
	warnings: list[str] = []
	entered_at = timestamps.for_stage(stage_code)
	if entered_at is None:
		warnings.append(f"missing entry timestamp for stage {stage_code}")

	stage_age = elapsed_minutes(entered_at, now) if entered_at is not None else None

	earliest = timestamps.earliest_growth()
	total_age = elapsed_minutes(earliest, now) if earliest is not None else None

	duration: int | None = None
	if stage_code == terminal_code:
		time_to_next: int | None = 0
		time_to_next_display: str | None = HARVESTED
	else:
		duration = stage_duration_minutes(stage_code, recipe)
		if duration is None:
			warnings.append(f"recipe missing duration for stage {stage_code}")
		if duration is None or entered_at is None:
			time_to_next = None
			time_to_next_display = None
		else:
			deadline = entered_at + timedelta(minutes=duration)
			time_to_next = elapsed_minutes(now, deadline)
			time_to_next_display = (
				READY_TO_ADVANCE if time_to_next <= 0 else format_duration(time_to_next)
			)

	return TimePhase(
		stage_code=stage_code,
		stage_entered_at=entered_at,
		stage_age_minutes=stage_age,
		stage_age_display=format_duration(stage_age) if stage_age is not None else None,
		time_to_next_stage_minutes=time_to_next,
		time_to_next_stage_display=time_to_next_display,
		total_age_minutes=total_age,
		total_age_display=format_duration(total_age) if total_age is not None else None,
		expected_harvest_at=expected_harvest_at(timestamps, recipe),
		stage_status=_stage_status(stage_age, duration),
		total_age_status=_total_age_status(total_age, recipe),
		warnings=warnings,
	)


def calculate_batch_time_phase(
	stage_code: str,
	crop_timestamps: Iterable[StageTimestamps],
	recipe: RecipeParameters,
	now: datetime,
	*,
	terminal_code: str = "harvested",
) -> TimePhase:
	"""Batch timing from the earliest per-crop timestamps."""
	return calculate_time_phase(
		stage_code,
		StageTimestamps.earliest_of(crop_timestamps),
		recipe,
		now,
		terminal_code=terminal_code,
	)
