"""AggregatedCropPlan ORM model — demand rolled up per variety and harvest date."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from sqlalchemy import Date, Enum, Float, ForeignKey, Index, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from trayflow.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin
from trayflow.models.enums import PlanStatusEnum


class AggregatedCropPlan(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Planting requirement for one ``(variety_id, harvest_date)`` window.

    ``calculation_details["orders"]`` maps order id → grams so totals can be
    rebuilt when an order is re-submitted.
    """

    __tablename__ = "aggregated_crop_plans"
    __table_args__ = (
        Index("ix_aggregated_crop_plans_key", "variety_id", "harvest_date", "status"),
    )

    variety_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)
    recipe_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("recipes.id", ondelete="RESTRICT"),
        nullable=False,
    )
    harvest_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_grams_needed: Mapped[float] = mapped_column(Float, nullable=False)
    total_trays_needed: Mapped[int] = mapped_column(Integer, nullable=False)
    grams_per_tray: Mapped[float] = mapped_column(Float, nullable=False)
    plant_date: Mapped[date] = mapped_column(Date, nullable=False)
    seed_soak_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[PlanStatusEnum] = mapped_column(
        Enum(
            PlanStatusEnum,
            name="crop_plan_status",
            create_constraint=False,
            native_enum=True,
        ),
        nullable=False,
        default=PlanStatusEnum.draft,
        server_default=PlanStatusEnum.draft.value,
    )
    calculation_details: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return (
            f"<AggregatedCropPlan variety={self.variety_id} harvest={self.harvest_date} "
            f"trays={self.total_trays_needed} status={self.status}>"
        )
