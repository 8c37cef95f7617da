"""plansync - live plan feeds and friend-overlap detection."""

from .clock import ManualClock, SystemClock
from .config import Config, load_config
from .errors import (
	CollaboratorUnavailable,
	InconsistentStateError,
	PlanSyncError,
	PlanValidationError,
	UnknownViewerError,
)
from .feed import FeedSynchronizer
from .models import (
	FeedDiff,
	FriendshipEvent,
	Location,
	Notification,
	OverlapEvent,
	OverlapRecord,
	Plan,
	PlanEvent,
	PlanKind,
)
from .overlap import OverlapMatcher
from .reconciler import ExpiryReconciler
from .service import PlanFeedService

__all__ = [
	"Config",
	"load_config",
	"ManualClock",
	"SystemClock",
	"PlanSyncError",
	"PlanValidationError",
	"CollaboratorUnavailable",
	"InconsistentStateError",
	"UnknownViewerError",
	"Plan",
	"PlanKind",
	"PlanEvent",
	"Location",
	"FriendshipEvent",
	"FeedDiff",
	"OverlapRecord",
	"OverlapEvent",
	"Notification",
	"FeedSynchronizer",
	"OverlapMatcher",
	"ExpiryReconciler",
	"PlanFeedService",
]
