"""Enum types for ORM columns.

Each StrEnum maps 1:1 to a PostgreSQL CREATE TYPE ... AS ENUM created by
the initial migration.
"""

from enum import StrEnum


class TransitionTypeEnum(StrEnum):
    """Kind of stage transition recorded on the audit log."""

    advance = "advance"
    revert = "revert"
    bulk_advance = "bulk_advance"
    bulk_revert = "bulk_revert"


class TransitionFailureCode(StrEnum):
    """Why a single crop was skipped inside a transition operation."""

    no_next_stage = "no_next_stage"
    no_previous_stage = "no_previous_stage"
    unknown_crop = "unknown_crop"
    stale_state = "stale_state"
    out_of_order_timestamp = "out_of_order_timestamp"


class TaskTypeEnum(StrEnum):
    """Scheduled work item kinds derived from stage timing."""

    end_stage = "end_stage"
    suspend_watering = "suspend_watering"
    expected_harvest = "expected_harvest"


class TaskStatusEnum(StrEnum):
    """Lifecycle of a scheduled crop task."""

    pending = "pending"
    triggered = "triggered"
    error = "error"
    dismissed = "dismissed"


class PlanStatusEnum(StrEnum):
    """Lifecycle of an aggregated crop plan."""

    draft = "draft"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class UserRoleEnum(StrEnum):
    """Roles carried in the bearer token ``role`` claim."""

    admin = "admin"
    grower = "grower"
    viewer = "viewer"
