"""
Notification Emitter - decides what to tell users about overlaps and friends.

Delivery belongs to the injected sink; this module only builds the
payloads and retries the sink with backoff. Failures are logged and
dropped since notifications are best-effort.
"""

import logging
from typing import Any

from .errors import CollaboratorUnavailable
from .interfaces import NotificationSink
from .models import FriendshipEvent, FriendshipOp, OverlapAction, OverlapEvent, OverlapRecord
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

KIND_OVERLAP = "overlap"
KIND_FRIEND_ADDED = "friend_added"


def overlap_payload(record: OverlapRecord, recipient_id: str) -> dict[str, Any]:
	"""Payload for one side of an overlap, from that user's point of view."""
	own_plan, friend_plan = record.perspective(recipient_id)
	return {
		"planIdSelf": own_plan,
		"planIdFriend": friend_plan,
		"distanceKm": round(record.distance_km, 1),
		"timeDeltaHours": round(record.time_delta_hours, 1),
	}


class NotificationEmitter:
	"""Turns overlap and friendship events into sink.notify calls."""

	def __init__(
		self,
		sink: NotificationSink,
		retry_policy: RetryPolicy | None = None,
		notify_friend_added: bool = True,
	):
		self.sink = sink
		self.retry_policy = retry_policy or RetryPolicy()
		self.notify_friend_added = notify_friend_added
		self.sent = 0
		self.dropped = 0

	async def on_overlap_event(self, event: OverlapEvent) -> None:
		# Refreshed or retired records are not worth a second alert
		if event.action != OverlapAction.ADD:
			return
		record = event.record
		for recipient_id in (record.owner_a_id, record.owner_b_id):
			await self._send(recipient_id, KIND_OVERLAP, overlap_payload(record, recipient_id))

	async def on_friendship_event(self, event: FriendshipEvent) -> None:
		if event.op != FriendshipOp.ADDED or not self.notify_friend_added:
			return
		await self._send(event.user_a, KIND_FRIEND_ADDED, {"friendId": event.user_b})
		await self._send(event.user_b, KIND_FRIEND_ADDED, {"friendId": event.user_a})

	async def _send(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> bool:
		try:
			await call_with_retry(
				self.sink.notify,
				recipient_id,
				kind,
				payload,
				policy=self.retry_policy,
				description=f"notify {recipient_id} ({kind})",
			)
		except CollaboratorUnavailable as e:
			self.dropped += 1
			logger.error(f"Dropping {kind} notification for {recipient_id}: {e}")
			return False
		self.sent += 1
		return True
