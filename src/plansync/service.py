"""
Plan Feed Service - wires the store, feed, matcher, reconciler and sink.

The service is constructed explicitly with its collaborators and has an
explicit lifecycle:

	service = PlanFeedService(store, sink, clock=clock, config=config)
	await service.start()
	feed = await service.get_live_feed("alice")
	overlaps = service.get_active_overlaps("alice")
	await service.stop()

Each owner whose plans are needed by at least one open viewer gets exactly
one store subscription, consumed by its own task. Subscriptions are
reference-counted across viewers and cancelled when the last viewer that
needs them goes away. When a subscription (re)starts, its replay is
compared with what the engine already knows about that owner, so plans
deleted while nobody was listening are removed as well.
"""

import asyncio
import logging
from typing import Optional

from .clock import Clock, SystemClock
from .config import Config
from .errors import CollaboratorUnavailable, PlanValidationError
from .feed import FeedSynchronizer
from .graph import FriendGraph
from .interfaces import NotificationSink, PlanStoreAdapter
from .models import (
	FeedDiff,
	FriendshipEvent,
	FriendshipOp,
	OverlapRecord,
	Plan,
	PlanEvent,
	PlanOp,
	ReplayComplete,
)
from .notifier import NotificationEmitter
from .overlap import OverlapMatcher
from .reconciler import ExpiryReconciler
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

STALE_FRIENDS = "friends"


def _owner_source(owner_id: str) -> str:
	return f"owner:{owner_id}"


class PlanFeedService:
	"""Live plan feeds and friend-overlap detection for a set of viewers."""

	def __init__(
		self,
		store: PlanStoreAdapter,
		sink: NotificationSink,
		clock: Optional[Clock] = None,
		config: Optional[Config] = None,
	):
		self.config = config or Config()
		self.config.validate()
		self.store = store
		self.clock = clock or SystemClock()
		self.retry_policy = RetryPolicy(
			attempts=self.config.retry_attempts,
			base_delay=self.config.retry_base_delay_seconds,
			max_delay=self.config.retry_max_delay_seconds,
		)

		self.graph = FriendGraph()
		self.feed = FeedSynchronizer(self.graph, self.clock)
		self.matcher = OverlapMatcher(
			live_plans=self.feed.live_plans_of,
			friends_of=self.graph.friends_of,
			is_live=self.feed.is_live,
			clock=self.clock,
			max_distance_km=self.config.max_distance_km,
			max_time_delta_hours=self.config.max_time_delta_hours,
		)
		self.emitter = NotificationEmitter(
			sink,
			retry_policy=self.retry_policy,
			notify_friend_added=self.config.notify_friend_added,
		)
		self.reconciler = ExpiryReconciler(
			self.feed,
			self.clock,
			interval_seconds=self.config.sweep_interval_seconds,
			jitter_seconds=self.config.sweep_jitter_seconds,
			shard_count=self.config.sweep_shards,
			idle_view_ttl_seconds=self.config.idle_view_ttl_seconds,
			on_idle=self.close_viewer,
		)
		self.reconciler.add_tick_hook(self._refresh_stale_friends)

		self.feed.add_listener(self.matcher.on_diff)
		self.matcher.add_listener(self.emitter.on_overlap_event)

		self._owner_tasks: dict[str, asyncio.Task] = {}
		self._synced: dict[str, asyncio.Event] = {}
		self._owner_refs: dict[str, set[str]] = {}
		self._viewer_owners: dict[str, set[str]] = {}
		self._friendship_task: Optional[asyncio.Task] = None
		self.running = False

	# Lifecycle

	async def start(self) -> None:
		if self.running:
			return
		self.running = True
		self._friendship_task = asyncio.create_task(
			self._consume_friendships(), name="friendship-events"
		)
		await self.reconciler.start()
		logger.info("Plan feed service started")

	async def stop(self) -> None:
		"""Stop sweeping and close every store stream."""
		if not self.running and not self._owner_tasks:
			return
		self.running = False
		await self.reconciler.stop()

		tasks = list(self._owner_tasks.values())
		if self._friendship_task is not None:
			tasks.append(self._friendship_task)
			self._friendship_task = None
		self._owner_tasks.clear()
		self._synced.clear()
		self._owner_refs.clear()
		self._viewer_owners.clear()

		for task in tasks:
			task.cancel()
		await asyncio.gather(*tasks, return_exceptions=True)
		logger.info("Plan feed service stopped")

	async def __aenter__(self) -> "PlanFeedService":
		await self.start()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.stop()

	# Viewers

	async def open_viewer(self, viewer_id: str) -> tuple[Plan, ...]:
		"""
		Start maintaining a viewer's feed and return its current snapshot.

		If the friend list cannot be fetched, the view opens with the
		viewer's own plans only and is marked stale until a later sweep
		manages to load it.
		"""
		if self.feed.is_open(viewer_id):
			return self.feed.snapshot(viewer_id)

		stale_sources = []
		try:
			friends = await call_with_retry(
				self.store.get_friends,
				viewer_id,
				policy=self.retry_policy,
				description=f"get_friends({viewer_id})",
			)
		except CollaboratorUnavailable:
			friends = set()
			stale_sources.append(STALE_FRIENDS)

		if self.feed.is_open(viewer_id):
			# Opened concurrently while we were waiting on the store
			return self.feed.snapshot(viewer_id)

		to_add, _ = self.graph.diff_friends(viewer_id, friends)
		for friend_id in sorted(to_add):
			await self._apply_friendship(
				FriendshipEvent(op=FriendshipOp.ADDED, user_a=viewer_id, user_b=friend_id),
				notify=False,
			)

		await self.feed.open_view(viewer_id, stale_sources=stale_sources)
		self._retain(viewer_id, {viewer_id} | self.graph.friends_of(viewer_id))
		return self.feed.snapshot(viewer_id)

	async def close_viewer(self, viewer_id: str) -> bool:
		"""Stop delivery to a viewer and release its subscriptions."""
		closed = self.feed.close_view(viewer_id)
		await self._release(viewer_id)
		return closed

	def _retain(self, viewer_id: str, owner_ids: set[str]) -> None:
		for owner_id in owner_ids:
			self._owner_refs.setdefault(owner_id, set()).add(viewer_id)
			self._viewer_owners.setdefault(viewer_id, set()).add(owner_id)
			if owner_id not in self._owner_tasks:
				self._synced[owner_id] = asyncio.Event()
				self._owner_tasks[owner_id] = asyncio.create_task(
					self._consume_owner(owner_id), name=f"plans-{owner_id}"
				)
				logger.debug(f"Subscribed to plans of {owner_id}")

	async def _release(self, viewer_id: str, owner_ids: Optional[set[str]] = None) -> None:
		held = self._viewer_owners.get(viewer_id, set())
		owner_ids = set(held) if owner_ids is None else owner_ids & held
		cancelled = []

		for owner_id in owner_ids:
			held.discard(owner_id)
			refs = self._owner_refs.get(owner_id)
			if refs is None:
				continue
			refs.discard(viewer_id)
			if refs:
				continue
			del self._owner_refs[owner_id]
			self._synced.pop(owner_id, None)
			task = self._owner_tasks.pop(owner_id, None)
			if task is not None and task is not asyncio.current_task():
				task.cancel()
				cancelled.append(task)
				logger.debug(f"Unsubscribed from plans of {owner_id}")

		if not held:
			self._viewer_owners.pop(viewer_id, None)
		await asyncio.gather(*cancelled, return_exceptions=True)

	def subscribed_owners(self) -> set[str]:
		return set(self._owner_tasks)

	# Store streams

	async def _consume_owner(self, owner_id: str) -> None:
		"""Feed one owner's plan stream into the synchronizer, resubscribing on failure."""
		failures = 0
		while True:
			replayed: Optional[set[str]] = set()
			try:
				async for event in self.store.subscribe({owner_id}):
					if isinstance(event, ReplayComplete):
						if replayed is not None:
							await self._drop_unreplayed(owner_id, replayed)
							replayed = None
						if failures:
							failures = 0
							self._set_owner_stale(owner_id, False)
						synced = self._synced.get(owner_id)
						if synced is not None:
							synced.set()
						continue
					if replayed is not None:
						replayed.add(event.plan.id)
					try:
						await self.feed.ingest(event)
					except PlanValidationError as e:
						logger.warning(f"Rejected plan event from {owner_id}'s stream: {e}")
				logger.info(f"Plan stream for {owner_id} ended")
				return
			except Exception as e:
				self._set_owner_stale(owner_id, True)
				synced = self._synced.get(owner_id)
				if synced is not None:
					synced.clear()
				delay = self.retry_policy.delay_for(min(failures, 16))
				failures += 1
				logger.warning(f"Plan stream for {owner_id} failed ({e}); resubscribing in {delay:.2f}s")
				await asyncio.sleep(delay)

	async def _drop_unreplayed(self, owner_id: str, replayed: set[str]) -> None:
		"""Delete indexed plans the store no longer has; they vanished while unsubscribed."""
		for plan in self.feed.live_plans_of(owner_id):
			if plan.id not in replayed:
				logger.info(f"Plan {plan.id} of {owner_id} is gone from the store; removing it")
				await self.feed.ingest(PlanEvent(op=PlanOp.DELETE, plan=plan))

	async def wait_synced(self) -> None:
		"""Wait until every owner subscription has delivered its initial replay."""
		await asyncio.gather(*(event.wait() for event in list(self._synced.values())))

	def _set_owner_stale(self, owner_id: str, stale: bool) -> None:
		source = _owner_source(owner_id)
		for viewer_id in self._owner_refs.get(owner_id, ()):
			if stale:
				self.feed.mark_stale(viewer_id, source)
			else:
				self.feed.clear_stale(viewer_id, source)

	async def _consume_friendships(self) -> None:
		failures = 0
		while True:
			try:
				async for event in self.store.friendship_events():
					failures = 0
					await self.handle_friendship(event)
				logger.info("Friendship stream ended")
				return
			except Exception as e:
				delay = self.retry_policy.delay_for(min(failures, 16))
				failures += 1
				logger.warning(f"Friendship stream failed ({e}); resubscribing in {delay:.2f}s")
				await asyncio.sleep(delay)

	# Mutations

	async def ingest(self, event: PlanEvent | dict) -> list[FeedDiff]:
		"""Push a plan change directly, bypassing the store stream."""
		return await self.feed.ingest(event)

	async def handle_friendship(self, event: FriendshipEvent | dict) -> None:
		"""Apply a friendship change to views, subscriptions, overlaps and alerts."""
		await self._apply_friendship(FriendshipEvent.coerce(event), notify=True)

	async def _apply_friendship(self, event: FriendshipEvent, notify: bool) -> None:
		added = event.op == FriendshipOp.ADDED
		if self.graph.are_friends(event.user_a, event.user_b) == added:
			logger.debug(f"Ignoring repeated friendship event {event.op.value} {event.user_a}/{event.user_b}")
			return

		await self.feed.apply_friendship(event)
		pairs = ((event.user_a, event.user_b), (event.user_b, event.user_a))
		if added:
			for viewer_id, other_id in pairs:
				if self.feed.is_open(viewer_id):
					self._retain(viewer_id, {other_id})
			await self.matcher.on_friendship_added(event.user_a, event.user_b)
		else:
			for viewer_id, other_id in pairs:
				await self._release(viewer_id, {other_id})
			await self.matcher.on_friendship_removed(event.user_a, event.user_b)

		logger.info(f"Friendship {event.op.value}: {event.user_a} / {event.user_b}")
		if notify:
			await self.emitter.on_friendship_event(event)

	async def _refresh_stale_friends(self, shard: Optional[int]) -> None:
		"""Reconciler hook: retry friend lookups for views that opened without them."""
		for viewer_id in self.feed.active_viewers():
			if shard is not None and self.reconciler.shard_of(viewer_id) != shard:
				continue
			if STALE_FRIENDS not in self.feed.stale_sources(viewer_id):
				continue
			try:
				friends = await self.store.get_friends(viewer_id)
			except Exception as e:
				logger.warning(f"Friend list for {viewer_id} still unavailable: {e}")
				continue

			to_add, to_remove = self.graph.diff_friends(viewer_id, friends)
			for friend_id in sorted(to_add):
				await self._apply_friendship(
					FriendshipEvent(op=FriendshipOp.ADDED, user_a=viewer_id, user_b=friend_id),
					notify=False,
				)
			for friend_id in sorted(to_remove):
				await self._apply_friendship(
					FriendshipEvent(op=FriendshipOp.REMOVED, user_a=viewer_id, user_b=friend_id),
					notify=False,
				)
			self.feed.clear_stale(viewer_id, STALE_FRIENDS)

	# Queries

	async def get_live_feed(self, viewer_id: str) -> tuple[Plan, ...]:
		"""Ordered live plans for a viewer, opening the viewer if needed."""
		if not self.feed.is_open(viewer_id):
			return await self.open_viewer(viewer_id)
		return self.feed.snapshot(viewer_id)

	def get_active_overlaps(self, user_id: str) -> set[OverlapRecord]:
		return self.matcher.active_overlaps(user_id)

	def stats(self) -> dict:
		return {
			**self.feed.stats(),
			"subscriptions": len(self._owner_tasks),
			"overlaps": len(self.matcher.all_overlaps()),
			"notifications_sent": self.emitter.sent,
			"notifications_dropped": self.emitter.dropped,
		}
