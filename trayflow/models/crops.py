"""CropBatch, Crop and CropStageHistory ORM models.

A batch owns zero or more crops by foreign key (the batch never embeds
crops).  ``Crop.batch_id`` stays nullable so legacy ungrouped trays can
still be read; new crops are always created inside a batch.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column

from trayflow.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin

# Stage code → crop column holding the stage entry timestamp.
STAGE_TIMESTAMP_FIELDS: dict[str, str] = {
    "soaking": "soaking_at",
    "germination": "germination_at",
    "blackout": "blackout_at",
    "light": "light_at",
    "harvested": "harvested_at",
}

# Timestamps that count toward a crop's total age (pre-harvest stages).
GROWTH_TIMESTAMP_FIELDS: tuple[str, ...] = (
    "soaking_at",
    "germination_at",
    "blackout_at",
    "light_at",
)


class CropBatch(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Trays planted or soaked together against one recipe."""

    __tablename__ = "crop_batches"

    recipe_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("recipes.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    crop_plan_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(),
        ForeignKey("aggregated_crop_plans.id", ondelete="SET NULL"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<CropBatch id={self.id} recipe={self.recipe_id}>"


class Crop(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A single tray tracked through the stage sequence."""

    __tablename__ = "crops"
    __table_args__ = (
        Index("ix_crops_batch_stage", "batch_id", "current_stage_id"),
    )

    batch_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(),
        ForeignKey("crop_batches.id", ondelete="CASCADE"),
        nullable=True,
    )
    recipe_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("recipes.id", ondelete="RESTRICT"),
        nullable=False,
    )
    tray_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    current_stage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("crop_stages.id", ondelete="RESTRICT"),
        nullable=False,
    )

    soaking_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    germination_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    blackout_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    light_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    harvested_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    watering_suspended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def stage_timestamps(self) -> dict[str, datetime | None]:
        return {code: getattr(self, field) for code, field in STAGE_TIMESTAMP_FIELDS.items()}

    def __repr__(self) -> str:
        return f"<Crop id={self.id} tray={self.tray_number!r} stage={self.current_stage_id}>"


class CropStageHistory(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Append-only per-crop stage residency record.

    At most one row per crop has ``exited_at IS NULL``.  The only write
    allowed after insert is closing that row.
    """

    __tablename__ = "crop_stage_history"
    __table_args__ = (
        Index("ix_crop_stage_history_crop_open", "crop_id", "exited_at"),
    )

    crop_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("crops.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True, index=True)
    stage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("crop_stages.id", ondelete="RESTRICT"),
        nullable=False,
    )
    entered_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    exited_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CropStageHistory crop={self.crop_id} stage={self.stage_id} "
            f"entered={self.entered_at} exited={self.exited_at}>"
        )


@event.listens_for(CropStageHistory, "before_update")
def _guard_history_update(_mapper, _connection, target: CropStageHistory) -> None:
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if attr.key in ("exited_at", "updated_at"):
            continue
        if state.attrs[attr.key].history.has_changes():
            raise ValueError(f"crop_stage_history.{attr.key} is immutable")

    closed = state.attrs.exited_at.history
    if closed.has_changes() and any(value is not None for value in closed.deleted):
        raise ValueError("crop_stage_history rows can only be closed once")
