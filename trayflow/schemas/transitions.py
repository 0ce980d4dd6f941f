"""Pydantic schemas for stage transitions, audit rows and stage history."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from trayflow.models.enums import TransitionFailureCode, TransitionTypeEnum


class AdvanceRequest(BaseModel):
	crop_ids: list[uuid.UUID] = Field(min_length=1)
	at: datetime | None = None
	expected_stage: str | None = None


class RevertRequest(BaseModel):
	crop_ids: list[uuid.UUID] = Field(min_length=1)
	reason: str | None = None
	at: datetime | None = None
	expected_stage: str | None = None


class BulkAdvanceRequest(BaseModel):
	from_stage: str | None = None
	at: datetime | None = None


class BulkRevertRequest(BaseModel):
	from_stage: str | None = None
	reason: str | None = None
	at: datetime | None = None


class FailedCrop(BaseModel):
	crop_id: uuid.UUID
	code: TransitionFailureCode
	reason: str


class CropOutcome(BaseModel):
	crop_id: uuid.UUID
	ok: bool
	from_stage: str | None = None
	to_stage: str | None = None
	code: TransitionFailureCode | None = None
	reason: str | None = None


class TransitionResult(BaseModel):
	transition_id: uuid.UUID
	type: TransitionTypeEnum
	batch_id: uuid.UUID | None
	crop_count: int
	succeeded_count: int
	failed_count: int
	from_stage: str | None
	to_stage: str | None
	transition_at: datetime
	reason: str | None = None
	failed_crops: list[FailedCrop] = Field(default_factory=list)
	validation_warnings: list[str] = Field(default_factory=list)
	outcomes: list[CropOutcome] = Field(default_factory=list)


class TransitionRead(BaseModel):
	id: uuid.UUID
	type: TransitionTypeEnum
	batch_id: uuid.UUID | None
	crop_count: int
	from_stage_id: uuid.UUID | None
	to_stage_id: uuid.UUID | None
	transition_at: datetime
	recorded_at: datetime
	user_id: uuid.UUID | None
	reason: str | None
	succeeded_count: int
	failed_count: int
	failed_crops: list[dict[str, Any]]
	metadata: dict[str, Any]
	source: str | None = None


class TransitionListRead(BaseModel):
	items: list[TransitionRead]


class HistoryRead(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: uuid.UUID
	crop_id: uuid.UUID
	batch_id: uuid.UUID | None
	stage_id: uuid.UUID
	entered_at: datetime
	exited_at: datetime | None
	notes: str | None
	created_by: uuid.UUID | None
