"""Pydantic request/response schemas for batches, crops and derived timing."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BatchCreate(BaseModel):
	recipe_id: uuid.UUID
	tray_count: int | None = Field(default=None, ge=1, le=500)
	tray_numbers: list[str] | None = Field(default=None, min_length=1, max_length=500)
	stage_code: str | None = None
	started_at: datetime | None = None
	order_id: uuid.UUID | None = None
	crop_plan_id: uuid.UUID | None = None
	notes: str | None = None

	@model_validator(mode="after")
	def _require_trays(self) -> BatchCreate:
		if self.tray_count is None and not self.tray_numbers:
			raise ValueError("either tray_count or tray_numbers is required")
		if self.tray_count is not None and self.tray_numbers and self.tray_count != len(self.tray_numbers):
			raise ValueError("tray_count does not match the number of tray_numbers")
		return self


class DerivedTiming(BaseModel):
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
	warnings: list[str] = Field(default_factory=list)


class CropRead(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: uuid.UUID
	batch_id: uuid.UUID | None
	recipe_id: uuid.UUID
	tray_number: str | None
	current_stage_id: uuid.UUID
	current_stage_code: str
	soaking_at: datetime | None
	germination_at: datetime | None
	blackout_at: datetime | None
	light_at: datetime | None
	harvested_at: datetime | None
	watering_suspended_at: datetime | None
	notes: str | None
	timing: DerivedTiming


class BatchProjection(BaseModel):
	batch_id: uuid.UUID
	recipe_id: uuid.UUID
	order_id: uuid.UUID | None
	crop_plan_id: uuid.UUID | None
	created_at: datetime
	current_stage_code: str | None
	crop_count: int
	crops: list[CropRead]
	derived_timing: DerivedTiming | None
	warnings: list[str] = Field(default_factory=list)


class BatchListRead(BaseModel):
	items: list[BatchProjection]


class BatchConsistency(BaseModel):
	batch_id: uuid.UUID
	valid: bool
	issues: list[str]
	total_crops: int
	stage_counts: dict[str, int]
	recipe_count: int
	suspended_count: int


class WateringChange(BaseModel):
	batch_id: uuid.UUID
	changed: int
	unchanged: int


class StageRead(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: uuid.UUID
	code: str
	name: str
	description: str | None
	color: str | None
	sort_order: int
	is_active: bool
