"""Contracts for the collaborators the engine talks to."""

from typing import Any, AsyncIterator, Protocol

from .models import FriendshipEvent, PlanEvent, ReplayComplete


class PlanStoreAdapter(Protocol):
	"""Change feed of plans plus friend-graph lookups."""

	def subscribe(self, owner_ids: set[str]) -> AsyncIterator[PlanEvent | ReplayComplete]:
		"""
		Stream plan changes for the given owners.

		The stream starts with an upsert for every current plan of those
		owners, followed by one ReplayComplete marker, then delivers changes
		as they happen. Closing the iterator (or cancelling the task
		consuming it) ends the subscription.
		"""
		...

	async def get_friends(self, user_id: str) -> set[str]:
		...

	def friendship_events(self) -> AsyncIterator[FriendshipEvent]:
		...


class NotificationSink(Protocol):
	"""Where user-facing alerts go. Raises on failure so callers can retry."""

	async def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
		...
