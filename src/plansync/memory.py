"""
In-memory collaborators.

InMemoryPlanStore implements the store adapter contract on top of plain
dicts and bounded asyncio queues; it backs the scenario simulator and the
test suite. InMemoryNotificationSink just collects what it is given.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from pydantic import ValidationError

from .clock import Clock, SystemClock
from .errors import PlanValidationError
from .models import (
	FriendshipEvent,
	FriendshipOp,
	Location,
	Notification,
	Plan,
	PlanEvent,
	PlanKind,
	PlanOp,
	ReplayComplete,
	validate_micro_horizon,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


class InMemoryPlanStore:
	"""
	Plan storage with owner-keyed change streams.

	Usage:
		store = InMemoryPlanStore(clock)
		plan = await store.create_plan("alice", "Coffee", start_time=...)

		async for event in store.subscribe({"alice"}):
			...
	"""

	def __init__(
		self,
		clock: Optional[Clock] = None,
		micro_plan_horizon_hours: float = 24.0,
		queue_size: int = 256,
	):
		self.clock = clock or SystemClock()
		self.micro_plan_horizon_hours = micro_plan_horizon_hours
		self.queue_size = queue_size
		self._plans: dict[str, Plan] = {}
		self._friends: dict[str, set[str]] = {}
		self._plan_subs: list[tuple[frozenset[str], asyncio.Queue]] = []
		self._friend_subs: list[asyncio.Queue] = []

	@property
	def subscriber_count(self) -> int:
		return len(self._plan_subs)

	# Plans

	async def create_plan(
		self,
		owner_id: str,
		title: str,
		start_time: datetime,
		kind: PlanKind | str = PlanKind.MICRO,
		end_time: Optional[datetime] = None,
		location: Location | dict | None = None,
		description: Optional[str] = None,
		metadata: Optional[dict[str, Any]] = None,
		plan_id: Optional[str] = None,
	) -> Plan:
		"""
		Create a plan on behalf of its owner and publish it.

		Raises:
			PlanValidationError: If the plan is malformed or a micro plan
				starts outside the creation horizon
		"""
		now = self.clock.now()
		try:
			plan = Plan(
				id=plan_id or uuid.uuid4().hex[:12],
				owner_id=owner_id,
				kind=kind,
				title=title,
				description=description,
				start_time=start_time,
				end_time=end_time,
				location=location,
				metadata=metadata or {},
				created_at=now,
			)
		except ValidationError as e:
			raise PlanValidationError(str(e)) from e

		validate_micro_horizon(plan, now, self.micro_plan_horizon_hours)
		await self.put_plan(plan)
		logger.info(f"Created {plan.kind.value} plan {plan.id} for {owner_id}")
		return plan

	async def put_plan(self, plan: Plan) -> None:
		"""Store a plan version as-is and publish an upsert."""
		self._plans[plan.id] = plan
		await self._publish(PlanEvent(op=PlanOp.UPSERT, plan=plan))

	async def delete_plan(self, plan_id: str) -> bool:
		plan = self._plans.pop(plan_id, None)
		if plan is None:
			return False
		await self._publish(PlanEvent(op=PlanOp.DELETE, plan=plan))
		return True

	def get_plan(self, plan_id: str) -> Optional[Plan]:
		return self._plans.get(plan_id)

	async def _publish(self, event: PlanEvent) -> None:
		for owners, queue in list(self._plan_subs):
			if event.plan.owner_id in owners:
				await queue.put(event)

	async def subscribe(self, owner_ids: set[str]) -> AsyncIterator[PlanEvent | ReplayComplete]:
		owners = frozenset(owner_ids)
		queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
		entry = (owners, queue)
		self._plan_subs.append(entry)
		try:
			for plan in [p for p in self._plans.values() if p.owner_id in owners]:
				yield PlanEvent(op=PlanOp.UPSERT, plan=plan)
			yield ReplayComplete(owner_ids=owners)
			while True:
				item = await queue.get()
				try:
					if item is _CLOSED:
						return
					yield item
				finally:
					# Resumed only once the consumer has handled the item
					queue.task_done()
		finally:
			self._plan_subs.remove(entry)

	async def drain(self) -> None:
		"""Wait until every open plan stream has handed off what was published."""
		await asyncio.gather(*(queue.join() for _, queue in list(self._plan_subs)))

	# Friendships

	async def get_friends(self, user_id: str) -> set[str]:
		return set(self._friends.get(user_id, ()))

	async def add_friendship(self, user_a: str, user_b: str) -> bool:
		event = FriendshipEvent(op=FriendshipOp.ADDED, user_a=user_a, user_b=user_b)
		if user_b in self._friends.get(user_a, ()):
			return False
		self._friends.setdefault(user_a, set()).add(user_b)
		self._friends.setdefault(user_b, set()).add(user_a)
		await self._publish_friendship(event)
		return True

	async def remove_friendship(self, user_a: str, user_b: str) -> bool:
		event = FriendshipEvent(op=FriendshipOp.REMOVED, user_a=user_a, user_b=user_b)
		if user_b not in self._friends.get(user_a, ()):
			return False
		self._friends[user_a].discard(user_b)
		self._friends[user_b].discard(user_a)
		await self._publish_friendship(event)
		return True

	async def _publish_friendship(self, event: FriendshipEvent) -> None:
		for queue in list(self._friend_subs):
			await queue.put(event)

	async def friendship_events(self) -> AsyncIterator[FriendshipEvent]:
		queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
		self._friend_subs.append(queue)
		try:
			while True:
				item = await queue.get()
				if item is _CLOSED:
					return
				yield item
		finally:
			self._friend_subs.remove(queue)

	async def close(self) -> None:
		"""End every open stream."""
		for _, queue in list(self._plan_subs):
			await queue.put(_CLOSED)
		for queue in list(self._friend_subs):
			await queue.put(_CLOSED)


class InMemoryNotificationSink:
	"""Collects notifications in a list."""

	def __init__(self, clock: Optional[Clock] = None):
		self.clock = clock or SystemClock()
		self.notifications: list[Notification] = []

	async def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
		self.notifications.append(Notification(
			id=len(self.notifications) + 1,
			recipient_id=recipient_id,
			kind=kind,
			payload=dict(payload),
			created_at=self.clock.now(),
		))

	def for_recipient(self, recipient_id: str, kind: Optional[str] = None) -> list[Notification]:
		return [
			n for n in self.notifications
			if n.recipient_id == recipient_id and (kind is None or n.kind == kind)
		]
