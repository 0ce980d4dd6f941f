"""CropStage ORM model — configurable, ordered growth-stage catalog."""

from __future__ import annotations

from sqlalchemy import Boolean, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from trayflow.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class CropStage(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One growth phase; stages are totally ordered by ``sort_order``.

    Rows referenced by history are never edited, only deactivated.
    """

    __tablename__ = "crop_stages"

    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(20), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        server_default=text("true"),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<CropStage code={self.code!r} sort_order={self.sort_order}>"
