"""Pydantic schemas for the scheduled task feed."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from trayflow.models.enums import TaskStatusEnum, TaskTypeEnum


class TaskRead(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: uuid.UUID
	crop_id: uuid.UUID
	batch_id: uuid.UUID | None
	recipe_id: uuid.UUID
	task_type: TaskTypeEnum
	stage_code: str
	scheduled_at: datetime
	triggered_at: datetime | None
	status: TaskStatusEnum
	details: dict[str, Any]
	error: str | None


class TaskListRead(BaseModel):
	items: list[TaskRead]


class TaskTriggerRequest(BaseModel):
	at: datetime | None = None


class TaskErrorRequest(BaseModel):
	message: str = Field(min_length=1, max_length=2048)


class ReconcileResponse(BaseModel):
	scanned: int
	scheduled: int
	due: int
