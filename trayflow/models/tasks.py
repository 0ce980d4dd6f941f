"""CropTask ORM model — future-dated work derived from stage timing."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Enum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from trayflow.models.base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin
from trayflow.models.enums import TaskStatusEnum, TaskTypeEnum


class CropTask(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A scheduled action for one crop.

    ``stage_code`` names the stage whose entry produced the task; leaving
    that stage dismisses whatever is still pending for it.
    """

    __tablename__ = "crop_tasks"
    __table_args__ = (
        Index("ix_crop_tasks_status_scheduled", "status", "scheduled_at"),
        Index("ix_crop_tasks_crop_stage", "crop_id", "stage_code"),
    )

    crop_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("crops.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    recipe_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("recipes.id", ondelete="RESTRICT"),
        nullable=False,
    )
    task_type: Mapped[TaskTypeEnum] = mapped_column(
        Enum(
            TaskTypeEnum,
            name="crop_task_type",
            create_constraint=False,
            native_enum=True,
        ),
        nullable=False,
    )
    stage_code: Mapped[str] = mapped_column(String(50), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[TaskStatusEnum] = mapped_column(
        Enum(
            TaskStatusEnum,
            name="crop_task_status",
            create_constraint=False,
            native_enum=True,
        ),
        nullable=False,
        default=TaskStatusEnum.pending,
        server_default=TaskStatusEnum.pending.value,
    )
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CropTask id={self.id} crop={self.crop_id} type={self.task_type} "
            f"status={self.status}>"
        )
