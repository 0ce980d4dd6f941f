"""CropStageTransition ORM model — operation-level transition audit log."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Enum, ForeignKey, Index, Integer, String, Text, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

from trayflow.models.base import Base, JSONType, UTCDateTime, UUIDPrimaryKeyMixin, utcnow
from trayflow.models.enums import TransitionTypeEnum


class CropStageTransition(Base, UUIDPrimaryKeyMixin):
    """One row per advance/revert call, however many crops it touched.

    ``failed_crops`` holds ``{"crop_id", "code", "reason"}`` entries and
    ``metadata`` carries ``validation_warnings`` plus the per-crop outcome
    list.  Rows are write-once.
    """

    __tablename__ = "crop_stage_transitions"
    __table_args__ = (
        Index("ix_crop_stage_transitions_batch_time", "batch_id", "transition_at"),
    )

    type: Mapped[TransitionTypeEnum] = mapped_column(
        Enum(
            TransitionTypeEnum,
            name="transition_type",
            create_constraint=False,
            native_enum=True,
        ),
        nullable=False,
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    crop_count: Mapped[int] = mapped_column(Integer, nullable=False)
    from_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(),
        ForeignKey("crop_stages.id", ondelete="RESTRICT"),
        nullable=True,
    )
    to_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(),
        ForeignKey("crop_stages.id", ondelete="RESTRICT"),
        nullable=True,
    )
    transition_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    succeeded_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_crops: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CropStageTransition type={self.type} crops={self.crop_count} "
            f"ok={self.succeeded_count} failed={self.failed_count}>"
        )


@event.listens_for(CropStageTransition, "before_update")
def _reject_transition_update(_mapper, _connection, target: CropStageTransition) -> None:
    raise ValueError(f"crop_stage_transitions row {target.id} is append-only")
