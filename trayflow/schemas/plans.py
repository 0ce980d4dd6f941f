"""Pydantic schemas for demand aggregation and crop plans."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from trayflow.models.enums import PlanStatusEnum


class DemandRequestIn(BaseModel):
	variety_id: uuid.UUID
	quantity_grams: float = Field(gt=0)
	harvest_date: date
	order_id: uuid.UUID | None = None
	grams_per_tray: float | None = Field(default=None, gt=0)


class DemandBatchIn(BaseModel):
	items: list[DemandRequestIn] = Field(min_length=1)


class PlanRead(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: uuid.UUID
	variety_id: uuid.UUID
	recipe_id: uuid.UUID
	harvest_date: date
	total_grams_needed: float
	total_trays_needed: int
	grams_per_tray: float
	plant_date: date
	seed_soak_date: date | None
	status: PlanStatusEnum
	calculation_details: dict[str, Any]
	created_at: datetime
	updated_at: datetime


class PlanListRead(BaseModel):
	items: list[PlanRead]


class PlanStatusUpdate(BaseModel):
	status: PlanStatusEnum


class PlanBatchCreate(BaseModel):
	started_at: datetime | None = None
	stage_code: str | None = None
