"""ORM model registry — importing this module registers every table on Base.metadata.

Alembic ``env.py`` imports ``Base`` from here (not from ``base.py``) so that
autogenerate sees all tables.  Application code can also do::

    from trayflow.models import Crop, CropBatch, CropStage, ...
"""

# ── Base & Mixins ───────────────────────────────────────────────────────────
from trayflow.models.base import (
    Base,
    JSONType,
    TimestampMixin,
    UTCDateTime,
    UUIDPrimaryKeyMixin,
)

# ── Crops, batches, history ─────────────────────────────────────────────────
from trayflow.models.crops import (
    GROWTH_TIMESTAMP_FIELDS,
    STAGE_TIMESTAMP_FIELDS,
    Crop,
    CropBatch,
    CropStageHistory,
)

# ── Enums ───────────────────────────────────────────────────────────────────
from trayflow.models.enums import (
    PlanStatusEnum,
    TaskStatusEnum,
    TaskTypeEnum,
    TransitionFailureCode,
    TransitionTypeEnum,
    UserRoleEnum,
)

# ── Planning ────────────────────────────────────────────────────────────────
from trayflow.models.plans import AggregatedCropPlan

# ── Reference data ──────────────────────────────────────────────────────────
from trayflow.models.recipes import Recipe
from trayflow.models.stages import CropStage

# ── Tasks & audit ───────────────────────────────────────────────────────────
from trayflow.models.tasks import CropTask
from trayflow.models.transitions import CropStageTransition

__all__ = [
    "GROWTH_TIMESTAMP_FIELDS",
    "STAGE_TIMESTAMP_FIELDS",
    "AggregatedCropPlan",
    # Base & mixins
    "Base",
    "Crop",
    "CropBatch",
    "CropStage",
    "CropStageHistory",
    "CropStageTransition",
    "CropTask",
    "JSONType",
    # Enums
    "PlanStatusEnum",
    "Recipe",
    "TaskStatusEnum",
    "TaskTypeEnum",
    "TimestampMixin",
    "TransitionFailureCode",
    "TransitionTypeEnum",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    "UserRoleEnum",
]
