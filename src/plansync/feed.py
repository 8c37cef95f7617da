"""
Feed Synchronizer - per-viewer live views of visible, unexpired plans.

Responsibilities:
- Keep the latest known version of every plan, indexed by owner
- Route plan changes to the owner's view and each open friend's view
- Re-evaluate visibility and expiry on every mutation
- Emit a FeedDiff for each view that actually changed, or for the owner
  when no open view saw an index change
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from .clock import Clock
from .errors import UnknownViewerError
from .graph import FriendGraph
from .models import FeedDiff, FriendshipEvent, FriendshipOp, Plan, PlanEvent, PlanOp

logger = logging.getLogger(__name__)

DiffListener = Callable[[FeedDiff], Awaitable[None]]


def _feed_order(plan: Plan) -> tuple[datetime, str]:
	return (plan.start_time, plan.id)


@dataclass
class ViewState:
	"""Mutable state of one viewer's live view. Guarded by its own lock."""
	viewer_id: str
	plans: dict[str, Plan] = field(default_factory=dict)
	lock: asyncio.Lock = field(default_factory=asyncio.Lock)
	stale_sources: set[str] = field(default_factory=set)
	opened_at: Optional[datetime] = None
	idle_since: Optional[datetime] = None

	@property
	def stale(self) -> bool:
		return bool(self.stale_sources)


class FeedSynchronizer:
	"""
	Maintains one materialized feed per active viewer.

	Usage:
		feed = FeedSynchronizer(graph, clock)
		feed.add_listener(matcher.on_diff)
		await feed.open_view("alice")
		await feed.ingest({"op": "upsert", "plan": {...}})
		plans = feed.snapshot("alice")
	"""

	def __init__(self, graph: FriendGraph, clock: Clock):
		self.graph = graph
		self.clock = clock
		self._views: dict[str, ViewState] = {}
		self._owner_plans: dict[str, dict[str, Plan]] = {}
		self._plan_owner: dict[str, str] = {}
		self._listeners: list[DiffListener] = []

	def add_listener(self, listener: DiffListener) -> None:
		self._listeners.append(listener)

	async def _emit(self, diffs: Iterable[FeedDiff]) -> None:
		for diff in diffs:
			for listener in self._listeners:
				try:
					await listener(diff)
				except Exception:
					logger.exception(f"Feed listener failed for viewer {diff.viewer_id}")

	# Views

	def is_open(self, viewer_id: str) -> bool:
		return viewer_id in self._views

	def active_viewers(self) -> list[str]:
		return list(self._views)

	def is_visible(self, viewer_id: str, plan: Plan) -> bool:
		return viewer_id == plan.owner_id or self.graph.are_friends(viewer_id, plan.owner_id)

	async def open_view(self, viewer_id: str, stale_sources: Iterable[str] = ()) -> FeedDiff:
		"""
		Register a viewer and fill its view from the owner index.

		Opening an already open viewer is a no-op that returns an empty diff.
		"""
		if viewer_id in self._views:
			return FeedDiff(viewer_id)

		now = self.clock.now()
		state = ViewState(viewer_id=viewer_id, stale_sources=set(stale_sources), opened_at=now)
		self._views[viewer_id] = state

		async with state.lock:
			for owner_id in {viewer_id} | self.graph.friends_of(viewer_id):
				for plan in self.live_plans_of(owner_id):
					state.plans[plan.id] = plan
			self._touch(state, now)
			diff = FeedDiff(viewer_id, added=sorted(state.plans.values(), key=_feed_order))

		logger.info(f"Opened view for {viewer_id} with {len(diff.added)} plans")
		if diff:
			await self._emit([diff])
		return diff

	def close_view(self, viewer_id: str) -> bool:
		"""Stop maintaining a viewer's feed and release its state."""
		state = self._views.pop(viewer_id, None)
		if state is None:
			return False
		logger.info(f"Closed view for {viewer_id}")
		return True

	def snapshot(self, viewer_id: str) -> tuple[Plan, ...]:
		"""
		Current live feed for a viewer, ordered by start time.

		Expiry is applied at read time, so entries the reconciler has not
		swept yet are never returned.
		"""
		state = self._require(viewer_id)
		now = self.clock.now()
		live = [p for p in state.plans.values() if not p.is_expired(now)]
		return tuple(sorted(live, key=_feed_order))

	def is_stale(self, viewer_id: str) -> bool:
		return self._require(viewer_id).stale

	def stale_sources(self, viewer_id: str) -> frozenset[str]:
		return frozenset(self._require(viewer_id).stale_sources)

	def mark_stale(self, viewer_id: str, source: str) -> None:
		state = self._views.get(viewer_id)
		if state is None:
			return
		if source not in state.stale_sources:
			logger.warning(f"View for {viewer_id} is stale ({source}); serving last known state")
		state.stale_sources.add(source)

	def clear_stale(self, viewer_id: str, source: str) -> None:
		state = self._views.get(viewer_id)
		if state is None or source not in state.stale_sources:
			return
		state.stale_sources.discard(source)
		if not state.stale_sources:
			logger.info(f"View for {viewer_id} recovered")

	def is_idle(self, viewer_id: str, now: datetime, ttl_seconds: float) -> bool:
		"""True once a fresh view has been empty for at least ttl_seconds."""
		state = self._views.get(viewer_id)
		if state is None or state.stale or state.plans or state.idle_since is None:
			return False
		return (now - state.idle_since).total_seconds() >= ttl_seconds

	def _require(self, viewer_id: str) -> ViewState:
		state = self._views.get(viewer_id)
		if state is None:
			raise UnknownViewerError(f"No open view for viewer {viewer_id}")
		return state

	@staticmethod
	def _touch(state: ViewState, now: datetime) -> None:
		if state.plans:
			state.idle_since = None
		elif state.idle_since is None:
			state.idle_since = now

	# Owner index

	def live_plans_of(self, owner_id: str) -> tuple[Plan, ...]:
		"""Immutable snapshot of an owner's unexpired plans."""
		now = self.clock.now()
		plans = self._owner_plans.get(owner_id, {})
		return tuple(sorted((p for p in plans.values() if not p.is_expired(now)), key=_feed_order))

	def is_live(self, plan: Plan) -> bool:
		"""Whether this plan id is still live for its owner."""
		current = self._owner_plans.get(plan.owner_id, {}).get(plan.id)
		return current is not None and not current.is_expired(self.clock.now())

	def _indexed(self, plan_id: str) -> Optional[Plan]:
		owner_id = self._plan_owner.get(plan_id)
		if owner_id is None:
			return None
		return self._owner_plans.get(owner_id, {}).get(plan_id)

	def _index(self, plan: Plan) -> None:
		previous_owner = self._plan_owner.get(plan.id)
		if previous_owner is not None and previous_owner != plan.owner_id:
			self._drop_from_owner(previous_owner, plan.id)
		self._owner_plans.setdefault(plan.owner_id, {})[plan.id] = plan
		self._plan_owner[plan.id] = plan.owner_id

	def _unindex(self, plan_id: str) -> None:
		owner_id = self._plan_owner.pop(plan_id, None)
		if owner_id is not None:
			self._drop_from_owner(owner_id, plan_id)

	def _drop_from_owner(self, owner_id: str, plan_id: str) -> None:
		plans = self._owner_plans.get(owner_id)
		if plans is None:
			return
		plans.pop(plan_id, None)
		if not plans:
			del self._owner_plans[owner_id]

	# Mutations

	async def ingest(self, raw: PlanEvent | dict) -> list[FeedDiff]:
		"""
		Apply one plan change to every relevant view.

		When the owner index changed but no open view holds the plan, a
		single owner-scoped diff is emitted instead so overlap state follows.

		Raises:
			PlanValidationError: If the event is malformed; nothing is stored
		"""
		event = PlanEvent.coerce(raw)
		plan = event.plan
		now = self.clock.now()
		prior = self._indexed(plan.id)

		if event.op == PlanOp.UPSERT and not plan.is_expired(now):
			self._index(plan)
			diffs = await self._route(plan.owner_id, lambda state: self._apply_upsert(state, plan))
			owner_diff = FeedDiff(plan.owner_id, added=[plan], removed=[prior] if prior else [])
			changed = prior != plan
		else:
			if event.op == PlanOp.UPSERT:
				logger.debug(f"Plan {plan.id} arrived already expired")
			self._unindex(plan.id)
			diffs = await self._route(plan.owner_id, lambda state: self._apply_removal(state, plan.id))
			owner_diff = FeedDiff(plan.owner_id, removed=[prior] if prior else [])
			changed = prior is not None

		if changed and not diffs:
			# No open view carried the change; listeners still need to see it
			diffs = [owner_diff]

		await self._emit(diffs)
		return diffs

	async def _route(
		self,
		owner_id: str,
		apply: Callable[[ViewState], Optional[FeedDiff]],
	) -> list[FeedDiff]:
		diffs = []
		relevant = {owner_id} | self.graph.friends_of(owner_id)
		for viewer_id in sorted(relevant):
			state = self._views.get(viewer_id)
			if state is None:
				continue
			async with state.lock:
				diff = apply(state)
			if diff:
				diffs.append(diff)
		return diffs

	def _apply_upsert(self, state: ViewState, plan: Plan) -> Optional[FeedDiff]:
		now = self.clock.now()
		if not self.is_visible(state.viewer_id, plan) or plan.is_expired(now):
			return self._apply_removal(state, plan.id)

		prior = state.plans.get(plan.id)
		if prior == plan:
			return None
		state.plans[plan.id] = plan
		self._touch(state, now)
		return FeedDiff(state.viewer_id, added=[plan], removed=[prior] if prior else [])

	def _apply_removal(self, state: ViewState, plan_id: str) -> Optional[FeedDiff]:
		prior = state.plans.pop(plan_id, None)
		if prior is None:
			return None
		self._touch(state, self.clock.now())
		return FeedDiff(state.viewer_id, removed=[prior])

	async def apply_friendship(self, event: FriendshipEvent) -> list[FeedDiff]:
		"""Update the friend graph and the two endpoints' views."""
		added = event.op == FriendshipOp.ADDED
		if added:
			changed = self.graph.add(event.user_a, event.user_b)
		else:
			changed = self.graph.remove(event.user_a, event.user_b)
		if not changed:
			return []

		diffs = []
		for viewer_id, other_id in ((event.user_a, event.user_b), (event.user_b, event.user_a)):
			state = self._views.get(viewer_id)
			if state is None:
				continue
			async with state.lock:
				if added:
					diff = FeedDiff(viewer_id)
					for plan in self.live_plans_of(other_id):
						if state.plans.get(plan.id) != plan:
							state.plans[plan.id] = plan
							diff.added.append(plan)
				else:
					gone = [pid for pid, p in state.plans.items() if p.owner_id == other_id]
					diff = FeedDiff(viewer_id, removed=[state.plans.pop(pid) for pid in gone])
				self._touch(state, self.clock.now())
			if diff:
				diffs.append(diff)

		await self._emit(diffs)
		return diffs

	async def expire_view(self, viewer_id: str) -> Optional[FeedDiff]:
		"""Drop entries whose expiry has passed. Returns the diff, if any."""
		state = self._views.get(viewer_id)
		if state is None:
			return None
		async with state.lock:
			now = self.clock.now()
			expired = sorted((p for p in state.plans.values() if p.is_expired(now)), key=_feed_order)
			for plan in expired:
				del state.plans[plan.id]
			self._touch(state, now)

		if not expired:
			return None
		diff = FeedDiff(viewer_id, removed=expired)
		await self._emit([diff])
		return diff

	async def prune_expired_plans(self) -> list[FeedDiff]:
		"""
		Drop expired plans from the owner index.

		Owners without an open view still get a diff so that overlap
		records on their plans are retired.
		"""
		now = self.clock.now()
		diffs = []
		for owner_id in list(self._owner_plans):
			expired = [p for p in self._owner_plans[owner_id].values() if p.is_expired(now)]
			for plan in expired:
				self._unindex(plan.id)
			if expired and owner_id not in self._views:
				diffs.append(FeedDiff(owner_id, removed=sorted(expired, key=_feed_order)))

		await self._emit(diffs)
		return diffs

	def stats(self) -> dict:
		return {
			"viewers": len(self._views),
			"stale_viewers": sum(1 for s in self._views.values() if s.stale),
			"owners": len(self._owner_plans),
			"plans": len(self._plan_owner),
		}
