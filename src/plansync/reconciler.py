"""
Expiry Reconciler - the time-driven half of feed maintenance.

Plans expire because time passes, not because data changes, so nothing
would ever remove them from a view without a periodic sweep. Viewers are
split into shards; each shard ticks on its own jittered schedule so the
sweeps don't all land at once.
"""

import asyncio
import logging
import random
import zlib
from typing import Awaitable, Callable, Optional

from .clock import Clock
from .feed import FeedSynchronizer
from .models import FeedDiff

logger = logging.getLogger(__name__)

TickHook = Callable[[Optional[int]], Awaitable[None]]


class ExpiryReconciler:
	"""
	Periodically expires lapsed plans and releases idle views.

	Args:
		feed: The synchronizer whose views are swept
		clock: Source of "now" for idle bookkeeping
		interval_seconds: Base time between sweeps of one shard
		jitter_seconds: Max random deviation from the interval
		shard_count: Number of independently scheduled viewer shards
		idle_view_ttl_seconds: How long a view must sit empty before release
		on_idle: Callback(viewer_id) that releases an idle viewer
	"""

	DEFAULT_INTERVAL = 60.0

	def __init__(
		self,
		feed: FeedSynchronizer,
		clock: Clock,
		interval_seconds: float = DEFAULT_INTERVAL,
		jitter_seconds: float = 5.0,
		shard_count: int = 4,
		idle_view_ttl_seconds: float = 300.0,
		on_idle: Optional[Callable[[str], Awaitable[None]]] = None,
	):
		if interval_seconds <= 0:
			raise ValueError("interval_seconds must be positive")
		self.feed = feed
		self.clock = clock
		self.interval_seconds = interval_seconds
		self.jitter_seconds = min(jitter_seconds, interval_seconds / 2)
		self.shard_count = max(1, shard_count)
		self.idle_view_ttl_seconds = idle_view_ttl_seconds
		self.on_idle = on_idle

		self._tick_hooks: list[TickHook] = []
		self._tasks: list[asyncio.Task] = []
		self.sweeps = 0

	def add_tick_hook(self, hook: TickHook) -> None:
		"""Run hook(shard) after every sweep."""
		self._tick_hooks.append(hook)

	def shard_of(self, viewer_id: str) -> int:
		return zlib.crc32(viewer_id.encode()) % self.shard_count

	@property
	def running(self) -> bool:
		return any(not t.done() for t in self._tasks)

	async def sweep(self, shard: Optional[int] = None) -> list[FeedDiff]:
		"""
		Sweep one shard, or every viewer when shard is None.

		Returns the diffs emitted for expired entries.
		"""
		diffs: list[FeedDiff] = []
		viewers = [
			v for v in self.feed.active_viewers()
			if shard is None or self.shard_of(v) == shard
		]

		for viewer_id in viewers:
			diff = await self.feed.expire_view(viewer_id)
			if diff:
				diffs.append(diff)

		# The owner index is shared, so only one shard prunes it
		if shard is None or shard == 0:
			diffs.extend(await self.feed.prune_expired_plans())

		for hook in self._tick_hooks:
			try:
				await hook(shard)
			except Exception:
				logger.exception("Reconciler tick hook failed")

		if self.on_idle is not None:
			now = self.clock.now()
			for viewer_id in viewers:
				if self.feed.is_idle(viewer_id, now, self.idle_view_ttl_seconds):
					logger.info(f"Releasing idle view for {viewer_id}")
					await self.on_idle(viewer_id)

		self.sweeps += 1
		if diffs:
			removed = sum(len(d.removed) for d in diffs)
			logger.info(f"Sweep (shard {shard}) expired {removed} entries across {len(diffs)} views")
		return diffs

	async def start(self) -> None:
		if self.running:
			return
		self._tasks = [
			asyncio.create_task(self._run_shard(shard), name=f"expiry-shard-{shard}")
			for shard in range(self.shard_count)
		]
		logger.info(
			f"Reconciler started: {self.shard_count} shards every "
			f"{self.interval_seconds:g}s (±{self.jitter_seconds:g}s)"
		)

	async def stop(self) -> None:
		tasks, self._tasks = self._tasks, []
		for task in tasks:
			task.cancel()
		await asyncio.gather(*tasks, return_exceptions=True)
		if tasks:
			logger.info("Reconciler stopped")

	def _next_delay(self) -> float:
		return self.interval_seconds + random.uniform(-self.jitter_seconds, self.jitter_seconds)

	async def _run_shard(self, shard: int) -> None:
		# Spread shards over the first interval
		await asyncio.sleep(random.uniform(0, self.interval_seconds))
		while True:
			try:
				await self.sweep(shard)
			except Exception:
				logger.exception(f"Sweep of shard {shard} failed")
			await asyncio.sleep(self._next_delay())
