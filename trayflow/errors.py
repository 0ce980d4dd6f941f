"""Domain errors raised by the lifecycle services.

Lookup failures subclass ``LookupError`` and validation failures subclass
``ValueError`` so routers can map them with the same ``_map_error`` helpers.
Per-crop transition failures are not exceptions: they are collected as
``TransitionFailureCode`` values on the transition result.
"""

from __future__ import annotations

import uuid


class UnknownCropError(LookupError):
	def __init__(self, crop_id: uuid.UUID) -> None:
		super().__init__(f"Crop {crop_id} not found")
		self.crop_id = crop_id


class UnknownBatchError(LookupError):
	def __init__(self, batch_id: uuid.UUID) -> None:
		super().__init__(f"Batch {batch_id} not found")
		self.batch_id = batch_id


class UnknownTaskError(LookupError):
	def __init__(self, task_id: uuid.UUID) -> None:
		super().__init__(f"Task {task_id} not found")
		self.task_id = task_id


class UnknownPlanError(LookupError):
	def __init__(self, plan_id: uuid.UUID) -> None:
		super().__init__(f"Crop plan {plan_id} not found")
		self.plan_id = plan_id


class UnknownRecipeError(LookupError):
	def __init__(self, detail: str) -> None:
		super().__init__(detail)


class UnknownStageError(ValueError):
	"""Stage code or id not present in the registry (programmer error)."""

	def __init__(self, stage: object) -> None:
		super().__init__(f"Unknown stage: {stage}")
		self.stage = stage


class StageRegistryError(ValueError):
	"""The configured stage catalog violates ordering rules."""


class MissingReasonError(ValueError):
	def __init__(self) -> None:
		super().__init__("A non-empty reason is required to revert a stage")


class LotDepletedError(ValueError):
	def __init__(self, recipe_id: uuid.UUID) -> None:
		super().__init__(f"Seed lot for recipe {recipe_id} is depleted")
		self.recipe_id = recipe_id


class InvalidPlanStatusError(ValueError):
	pass


class TransitionBusyError(RuntimeError):
	"""A batch lock could not be acquired within the configured timeout."""

	def __init__(self, key: str, timeout: float) -> None:
		super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {key}")
		self.key = key
		self.timeout = timeout


class RecipeParameterMissingError(ValueError):
	"""A value needed for a hard calculation (not a display) is absent."""

	def __init__(self, recipe_id: uuid.UUID, parameter: str) -> None:
		super().__init__(f"Recipe {recipe_id} has no {parameter}")
		self.recipe_id = recipe_id
		self.parameter = parameter


class InvalidStartStageError(ValueError):
	def __init__(self, stage_code: str) -> None:
		super().__init__(f"A batch cannot start in stage {stage_code}")
		self.stage_code = stage_code
