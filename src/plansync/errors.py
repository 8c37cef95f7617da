"""Error taxonomy for the plan feed engine."""


class PlanSyncError(Exception):
	"""Base class for plansync errors."""
	pass


class PlanValidationError(PlanSyncError, ValueError):
	"""Raised when a plan or event is malformed and must not be stored."""
	pass


class CollaboratorUnavailable(PlanSyncError):
	"""Raised when the store adapter, friend graph or sink keeps failing."""

	def __init__(self, description: str, attempts: int = 0):
		self.description = description
		self.attempts = attempts
		super().__init__(f"{description} unavailable after {attempts} attempts")


class InconsistentStateError(PlanSyncError):
	"""Raised when overlap bookkeeping references something that isn't live."""
	pass


class UnknownViewerError(PlanSyncError, LookupError):
	"""Raised when reading the view of a viewer that was never opened."""
	pass
