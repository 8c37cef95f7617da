"""
Overlap Matcher - detects friends' plans that coincide in place and time.

Works incrementally off feed diffs: a changed plan is only compared
against its owner's friends' live plans, and a friendship change only
touches pairs between the two users involved.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from .clock import Clock
from .errors import InconsistentStateError
from .geo import haversine_km
from .models import FeedDiff, OverlapAction, OverlapEvent, OverlapRecord, Plan

logger = logging.getLogger(__name__)

OverlapListener = Callable[[OverlapEvent], Awaitable[None]]

# Absorbs float noise so boundary values stay inclusive
_EPSILON = 1e-9


class OverlapMatcher:
	"""
	Keeps the set of live overlap records, one per unordered plan pair.

	Args:
		live_plans: owner id -> immutable tuple of that owner's live plans
		friends_of: user id -> ids of that user's current friends
		is_live: whether a plan id is still live for its owner
		clock: source of detected_at timestamps
	"""

	DEFAULT_MAX_DISTANCE_KM = 5.0
	DEFAULT_MAX_TIME_DELTA_HOURS = 2.0

	def __init__(
		self,
		live_plans: Callable[[str], Iterable[Plan]],
		friends_of: Callable[[str], Iterable[str]],
		is_live: Callable[[Plan], bool],
		clock: Clock,
		max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
		max_time_delta_hours: float = DEFAULT_MAX_TIME_DELTA_HOURS,
	):
		self._live_plans = live_plans
		self._friends_of = friends_of
		self._is_live = is_live
		self.clock = clock
		self.max_distance_km = max_distance_km
		self.max_time_delta_hours = max_time_delta_hours

		self._records: dict[frozenset[str], OverlapRecord] = {}
		self._by_plan: dict[str, set[frozenset[str]]] = {}
		self._by_owner: dict[str, set[frozenset[str]]] = {}
		# Last version of each plan that was matched, to skip repeats
		self._evaluated: dict[str, Plan] = {}
		self._listeners: list[OverlapListener] = []

	def add_listener(self, listener: OverlapListener) -> None:
		self._listeners.append(listener)

	async def _emit(self, events: list[OverlapEvent]) -> None:
		for event in events:
			for listener in self._listeners:
				try:
					await listener(event)
				except Exception:
					logger.exception(f"Overlap listener failed for {sorted(event.record.key)}")

	# Predicate

	def match(self, a: Plan, b: Plan) -> Optional[tuple[float, float]]:
		"""
		Return (distance_km, time_delta_hours) if the two plans coincide.

		Plans of the same owner, or without coordinates on either side,
		never match. Both thresholds are inclusive.
		"""
		if a.owner_id == b.owner_id or a.id == b.id:
			return None
		coords_a = a.coordinates
		coords_b = b.coordinates
		if coords_a is None or coords_b is None:
			return None

		delta_hours = abs((a.start_time - b.start_time).total_seconds()) / 3600
		if delta_hours > self.max_time_delta_hours + _EPSILON:
			return None

		distance = haversine_km(coords_a[0], coords_a[1], coords_b[0], coords_b[1])
		if distance > self.max_distance_km + _EPSILON:
			return None
		return distance, delta_hours

	def _candidates(self, plan: Plan) -> Iterable[Plan]:
		"""Friends' live plans that could pair with `plan`."""
		for friend_id in self._friends_of(plan.owner_id):
			yield from self._live_plans(friend_id)

	# Triggers

	async def on_diff(self, diff: FeedDiff) -> list[OverlapEvent]:
		"""React to one view's diff."""
		events: list[OverlapEvent] = []

		for plan in diff.removed:
			if self._is_live(plan):
				# Left this view only (unfriend, closed view); still live for its owner
				continue
			events.extend(self._retire_plan(plan.id))

		for plan in diff.added:
			if self._evaluated.get(plan.id) == plan:
				continue
			events.extend(self._evaluate(plan))

		await self._emit(events)
		return events

	async def on_friendship_added(self, user_a: str, user_b: str) -> list[OverlapEvent]:
		"""Match every live plan of user_a against every live plan of user_b."""
		events: list[OverlapEvent] = []
		plans_b = tuple(self._live_plans(user_b))
		for plan_a in self._live_plans(user_a):
			for plan_b in plans_b:
				result = self.match(plan_a, plan_b)
				if result is not None:
					event = self._upsert(plan_a, plan_b, *result)
					if event is not None:
						events.append(event)
		await self._emit(events)
		return events

	async def on_friendship_removed(self, user_a: str, user_b: str) -> list[OverlapEvent]:
		"""Retire all records between the two users without re-matching."""
		keys = [
			key for key in self._by_owner.get(user_a, ())
			if self._records[key].owners == frozenset((user_a, user_b))
		]
		events = []
		for key in keys:
			event = self._retire_key(key)
			if event is not None:
				events.append(event)
		await self._emit(events)
		return events

	async def retire_plan(self, plan_id: str) -> list[OverlapEvent]:
		"""Retire every record referencing plan_id."""
		events = self._retire_plan(plan_id)
		await self._emit(events)
		return events

	# Queries

	def active_overlaps(self, user_id: str) -> set[OverlapRecord]:
		return {self._records[key] for key in self._by_owner.get(user_id, ())}

	def all_overlaps(self) -> list[OverlapRecord]:
		return list(self._records.values())

	def get(self, plan_id_a: str, plan_id_b: str) -> Optional[OverlapRecord]:
		return self._records.get(frozenset((plan_id_a, plan_id_b)))

	# Bookkeeping

	def _evaluate(self, plan: Plan) -> list[OverlapEvent]:
		self._evaluated[plan.id] = plan
		events = []
		matched: dict[frozenset[str], tuple[Plan, float, float]] = {}

		if plan.coordinates is not None:
			for other in self._candidates(plan):
				result = self.match(plan, other)
				if result is not None:
					matched[frozenset((plan.id, other.id))] = (other, *result)

		for key in list(self._by_plan.get(plan.id, ())):
			if key not in matched:
				event = self._retire_key(key)
				if event is not None:
					events.append(event)

		for other, distance, delta in matched.values():
			event = self._upsert(plan, other, distance, delta)
			if event is not None:
				events.append(event)
		return events

	def _upsert(self, a: Plan, b: Plan, distance: float, delta: float) -> Optional[OverlapEvent]:
		"""Store a match. Returns an add event only on first detection."""
		if b.id < a.id:
			a, b = b, a
		key = frozenset((a.id, b.id))
		existing = self._records.get(key)
		detected_at: datetime = existing.detected_at if existing else self.clock.now()

		record = OverlapRecord(
			plan_a_id=a.id,
			plan_b_id=b.id,
			owner_a_id=a.owner_id,
			owner_b_id=b.owner_id,
			distance_km=distance,
			time_delta_hours=delta,
			detected_at=detected_at,
		)
		self._records[key] = record
		if existing is not None:
			return None

		for plan_id in key:
			self._by_plan.setdefault(plan_id, set()).add(key)
		for owner_id in record.owners:
			self._by_owner.setdefault(owner_id, set()).add(key)
		logger.info(
			f"Overlap {a.id} ({a.owner_id}) ~ {b.id} ({b.owner_id}): "
			f"{distance:.2f} km, {delta:.2f} h"
		)
		return OverlapEvent(action=OverlapAction.ADD, record=record)

	def _retire_plan(self, plan_id: str) -> list[OverlapEvent]:
		self._evaluated.pop(plan_id, None)
		events = []
		for key in list(self._by_plan.get(plan_id, ())):
			event = self._retire_key(key)
			if event is not None:
				events.append(event)
		return events

	def _retire_key(self, key: frozenset[str]) -> Optional[OverlapEvent]:
		try:
			record = self._remove(key)
		except InconsistentStateError as e:
			logger.warning(f"Ignoring overlap retirement: {e}")
			return None
		return OverlapEvent(action=OverlapAction.REMOVE, record=record)

	def _remove(self, key: frozenset[str]) -> OverlapRecord:
		record = self._records.pop(key, None)
		for plan_id in key:
			self._discard(self._by_plan, plan_id, key)
		if record is None:
			raise InconsistentStateError(f"no live overlap for plans {sorted(key)}")
		for owner_id in record.owners:
			self._discard(self._by_owner, owner_id, key)
		logger.info(f"Retired overlap {record.plan_a_id} ~ {record.plan_b_id}")
		return record

	@staticmethod
	def _discard(index: dict[str, set[frozenset[str]]], item: str, key: frozenset[str]) -> None:
		keys = index.get(item)
		if keys is None:
			return
		keys.discard(key)
		if not keys:
			del index[item]
