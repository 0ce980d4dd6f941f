"""Recipe ORM model — growth parameters owned by the recipe catalog.

The lifecycle engine only reads these rows.  ``lot_depleted`` mirrors the
inventory subsystem's seed-lot signal and gates new batch creation.
"""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Float, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from trayflow.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Recipe(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Per-variety timing, yield and buffer parameters."""

    __tablename__ = "recipes"

    variety_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    seed_soak_hours: Mapped[float | None] = mapped_column(Float, nullable=True, default=0.0)
    germination_days: Mapped[float | None] = mapped_column(Float, nullable=True)
    blackout_days: Mapped[float | None] = mapped_column(Float, nullable=True)
    light_days: Mapped[float | None] = mapped_column(Float, nullable=True)
    days_to_maturity: Mapped[float | None] = mapped_column(Float, nullable=True)
    expected_yield_grams: Mapped[float | None] = mapped_column(Float, nullable=True)
    buffer_percentage: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, server_default=text("0")
    )
    suspend_water_hours: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, server_default=text("0")
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    lot_depleted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )

    @property
    def requires_soaking(self) -> bool:
        return (self.seed_soak_hours or 0) > 0

    def __repr__(self) -> str:
        return f"<Recipe id={self.id} name={self.name!r}>"
