"""Shared test fixtures and helpers for plansync tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from plansync.clock import ManualClock
from plansync.config import Config
from plansync.feed import FeedSynchronizer
from plansync.graph import FriendGraph
from plansync.memory import InMemoryPlanStore
from plansync.models import (
	FriendshipEvent,
	FriendshipOp,
	Location,
	Plan,
	PlanEvent,
	PlanKind,
	PlanOp,
)
from plansync.overlap import OverlapMatcher

T0 = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

# Coffee/Walk scenario coordinates, about 2.38 km apart in Manhattan
COFFEE_LOC = (40.70, -74.00)
WALK_LOC = (40.72, -74.01)


def make_plan(
	plan_id: str,
	owner_id: str,
	start_in: timedelta = timedelta(hours=1),
	kind: PlanKind = PlanKind.MICRO,
	loc: Optional[tuple[float, float]] = None,
	duration: Optional[timedelta] = None,
	title: Optional[str] = None,
	now: datetime = T0,
	**extra: Any,
) -> Plan:
	"""Create a Plan starting `start_in` after `now`."""
	start = now + start_in
	return Plan(
		id=plan_id,
		owner_id=owner_id,
		kind=kind,
		title=title or plan_id.title(),
		start_time=start,
		end_time=start + duration if duration is not None else None,
		location=Location(name=f"{plan_id} spot", lat=loc[0], lng=loc[1]) if loc else None,
		created_at=now,
		**extra,
	)


def upsert(plan: Plan) -> PlanEvent:
	return PlanEvent(op=PlanOp.UPSERT, plan=plan)


def delete(plan: Plan) -> PlanEvent:
	return PlanEvent(op=PlanOp.DELETE, plan=plan)


def befriend(user_a: str, user_b: str) -> FriendshipEvent:
	return FriendshipEvent(op=FriendshipOp.ADDED, user_a=user_a, user_b=user_b)


def unfriend(user_a: str, user_b: str) -> FriendshipEvent:
	return FriendshipEvent(op=FriendshipOp.REMOVED, user_a=user_a, user_b=user_b)


def build_engine(clock: Optional[ManualClock] = None, **matcher_kwargs):
	"""Wire a graph, feed and matcher the way the service does."""
	clock = clock or ManualClock(T0)
	graph = FriendGraph()
	feed = FeedSynchronizer(graph, clock)
	matcher = OverlapMatcher(
		live_plans=feed.live_plans_of,
		friends_of=graph.friends_of,
		is_live=feed.is_live,
		clock=clock,
		**matcher_kwargs,
	)
	feed.add_listener(matcher.on_diff)
	return clock, graph, feed, matcher


def fast_config(tmp_path=None, **overrides) -> Config:
	"""Config with near-zero retry delays so failure paths finish quickly."""
	kwargs: dict[str, Any] = {
		"retry_attempts": 2,
		"retry_base_delay_seconds": 0.001,
		"retry_max_delay_seconds": 0.005,
		"sweep_interval_seconds": 60.0,
		"sweep_jitter_seconds": 0.0,
	}
	if tmp_path is not None:
		kwargs["config_dir"] = tmp_path / "config"
		kwargs["data_dir"] = tmp_path / "data"
	kwargs.update(overrides)
	return Config(**kwargs)


async def settle(rounds: int = 50) -> None:
	"""Let background stream tasks run until queues drain."""
	for _ in range(rounds):
		await asyncio.sleep(0)


class FlakyPlanStore(InMemoryPlanStore):
	"""In-memory store whose friend lookups and subscriptions fail on demand."""

	def __init__(self, *args, friend_failures: int = 0, subscribe_failures: int = 0, **kwargs):
		super().__init__(*args, **kwargs)
		self.friend_failures = friend_failures
		self.subscribe_failures = subscribe_failures
		self.friend_calls = 0
		self.generation = 0

	def break_streams(self) -> None:
		"""Make every open subscription fail on its next event."""
		self.generation += 1

	async def get_friends(self, user_id: str) -> set[str]:
		self.friend_calls += 1
		if self.friend_failures:
			self.friend_failures -= 1
			raise ConnectionError("friend graph unreachable")
		return await super().get_friends(user_id)

	async def subscribe(self, owner_ids: set[str]):
		if self.subscribe_failures:
			self.subscribe_failures -= 1
			raise ConnectionError("plan store unreachable")
		generation = self.generation
		stream = super().subscribe(owner_ids)
		try:
			async for event in stream:
				if self.generation != generation:
					raise ConnectionError("plan stream dropped")
				yield event
		finally:
			await stream.aclose()


class FailingSink:
	"""Notification sink that fails the first `failures` calls."""

	def __init__(self, failures: int = 1_000_000):
		self.failures = failures
		self.calls = 0
		self.delivered: list[tuple[str, str, dict]] = []

	async def notify(self, recipient_id: str, kind: str, payload: dict) -> None:
		self.calls += 1
		if self.failures:
			self.failures -= 1
			raise ConnectionError("sink down")
		self.delivered.append((recipient_id, kind, payload))
