from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from trayflow.services.time_phase import (
	HARVESTED,
	READY_TO_ADVANCE,
	RecipeParameters,
	StageTimestamps,
	calculate_batch_time_phase,
	calculate_time_phase,
	elapsed_minutes,
	expected_harvest_at,
	format_duration,
	stage_duration_minutes,
)

T0 = datetime(2025, 1, 1, 8, 0, tzinfo=UTC)

RECIPE = RecipeParameters(
	seed_soak_hours=12.0,
	germination_days=3.0,
	blackout_days=2.0,
	light_days=5.0,
	days_to_maturity=10.0,
)


@pytest.mark.parametrize(
	("minutes", "expected"),
	[
		(0, "0m"),
		(59, "59m"),
		(60, "1h 0m"),
		(125, "2h 5m"),
		(23 * 60 + 59, "23h 59m"),
		(24 * 60, "1d 0h"),
		(3 * 24 * 60 + 5 * 60 + 30, "3d 5h"),
		(-30, "0m"),
	],
)
def test_format_duration_boundaries(minutes: int, expected: str) -> None:
	assert format_duration(minutes) == expected


def test_elapsed_minutes_truncates() -> None:
	assert elapsed_minutes(T0, T0 + timedelta(minutes=5, seconds=59)) == 5
	assert elapsed_minutes(T0 + timedelta(minutes=5, seconds=59), T0) == -5


def test_stage_duration_uses_hours_for_soaking_and_days_otherwise() -> None:
	assert stage_duration_minutes("soaking", RECIPE) == 12 * 60
	assert stage_duration_minutes("germination", RECIPE) == 3 * 24 * 60
	assert stage_duration_minutes("light", RECIPE) == 5 * 24 * 60
	assert stage_duration_minutes("blackout", RecipeParameters()) is None


def test_countdown_and_status_mid_stage() -> None:
	timestamps = StageTimestamps(germination_at=T0)
	phase = calculate_time_phase("germination", timestamps, RECIPE, T0 + timedelta(days=1))

	assert phase.stage_age_minutes == 24 * 60
	assert phase.stage_age_display == "1d 0h"
	assert phase.time_to_next_stage_minutes == 2 * 24 * 60
	assert phase.time_to_next_stage_display == "2d 0h"
	assert phase.stage_status == "On Track"
	assert phase.total_age_minutes == 24 * 60
	assert phase.total_age_status == "Growing"
	assert not phase.is_overdue


def test_overdue_stage_reads_ready_to_advance() -> None:
	timestamps = StageTimestamps(germination_at=T0)
	phase = calculate_time_phase("germination", timestamps, RECIPE, T0 + timedelta(days=4))

	assert phase.time_to_next_stage_minutes == -24 * 60
	assert phase.time_to_next_stage_display == READY_TO_ADVANCE
	assert phase.stage_status == "Overdue"
	assert phase.is_overdue


def test_exactly_due_reads_ready_to_advance() -> None:
	timestamps = StageTimestamps(germination_at=T0)
	phase = calculate_time_phase("germination", timestamps, RECIPE, T0 + timedelta(days=3))
	assert phase.time_to_next_stage_minutes == 0
	assert phase.time_to_next_stage_display == READY_TO_ADVANCE
	assert phase.stage_status == "Due Soon"


def test_terminal_stage_is_fixed_at_zero() -> None:
	timestamps = StageTimestamps(germination_at=T0, light_at=T0 + timedelta(days=5), harvested_at=T0 + timedelta(days=10))
	phase = calculate_time_phase("harvested", timestamps, RECIPE, T0 + timedelta(days=12))
	assert phase.time_to_next_stage_minutes == 0
	assert phase.time_to_next_stage_display == HARVESTED
	assert phase.stage_status is None


def test_missing_duration_and_timestamp_produce_warnings_not_errors() -> None:
	phase = calculate_time_phase("blackout", StageTimestamps(), RecipeParameters(), T0)
	assert phase.stage_age_minutes is None
	assert phase.time_to_next_stage_minutes is None
	assert phase.total_age_minutes is None
	assert phase.expected_harvest_at is None
	assert phase.total_age_status == "No maturity target"
	assert "missing entry timestamp for stage blackout" in phase.warnings
	assert "recipe missing duration for stage blackout" in phase.warnings


def test_total_age_counts_from_earliest_growth_timestamp() -> None:
	timestamps = StageTimestamps(soaking_at=T0, germination_at=T0 + timedelta(hours=12))
	phase = calculate_time_phase("germination", timestamps, RECIPE, T0 + timedelta(days=9, hours=12))
	assert phase.total_age_minutes == (9 * 24 + 12) * 60
	assert phase.total_age_status == "Ready to Harvest"


def test_expected_harvest_sums_day_offsets_and_falls_back_to_maturity() -> None:
	timestamps = StageTimestamps(germination_at=T0)
	assert expected_harvest_at(timestamps, RECIPE) == T0 + timedelta(days=10)
	assert expected_harvest_at(timestamps, RecipeParameters(days_to_maturity=8)) == T0 + timedelta(days=8)
	assert expected_harvest_at(timestamps, RecipeParameters()) is None
	assert expected_harvest_at(StageTimestamps(), RECIPE) is None


def test_batch_view_uses_earliest_crop_timestamps() -> None:
	early = StageTimestamps(germination_at=T0, blackout_at=T0 + timedelta(days=3))
	late = StageTimestamps(germination_at=T0 + timedelta(hours=6), blackout_at=T0 + timedelta(days=3, hours=6))
	now = T0 + timedelta(days=4)

	phase = calculate_batch_time_phase("blackout", [late, early], RECIPE, now)

	assert phase.stage_entered_at == T0 + timedelta(days=3)
	assert phase.stage_age_minutes == 24 * 60
	assert phase.total_age_minutes == 4 * 24 * 60
