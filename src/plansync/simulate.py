"""
Scenario replay against an in-memory store and a manual clock.

A scenario is a JSON document:

	{
		"start": "2024-06-01T09:00:00Z",
		"viewers": ["alice", "bob"],
		"friendships": [["alice", "bob"]],
		"plans": [
			{"id": "coffee", "owner_id": "alice", "title": "Coffee",
			 "start_in_minutes": 60, "location": {"lat": 40.70, "lng": -74.00}}
		],
		"steps": [
			{"advance_minutes": 90},
			{"friendship": {"op": "removed", "user_a": "alice", "user_b": "bob"}},
			{"plan": {...}},
			{"delete": "coffee"}
		]
	}

Plans use offsets from the current simulated time instead of absolute
instants so scenarios stay readable. Plan changes go through the store and
reach the engine over its subscriptions, so only plans of viewers and
their friends are tracked.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from .clock import ManualClock
from .config import Config
from .errors import PlanValidationError
from .interfaces import NotificationSink
from .memory import InMemoryNotificationSink, InMemoryPlanStore
from .models import (
	FriendshipEvent,
	FriendshipOp,
	OverlapRecord,
	Plan,
	parse_plan,
	validate_micro_horizon,
)
from .service import PlanFeedService

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
	"""State of every viewer's feed and the overlaps after one step."""
	label: str
	now: datetime
	feeds: dict[str, list[Plan]] = field(default_factory=dict)
	overlaps: list[OverlapRecord] = field(default_factory=list)
	rejected: list[str] = field(default_factory=list)


@dataclass
class ScenarioResult:
	steps: list[StepResult] = field(default_factory=list)
	stats: dict[str, Any] = field(default_factory=dict)


def _plan_from_entry(entry: dict[str, Any], now: datetime, horizon_hours: float) -> Plan:
	"""Turn a scenario plan entry into a validated Plan created at `now`."""
	data = {k: v for k, v in entry.items() if k not in ("start_in_minutes", "duration_minutes")}
	if "start_in_minutes" in entry:
		data["start_time"] = now + timedelta(minutes=entry["start_in_minutes"])
	if "duration_minutes" in entry:
		if "start_time" not in data:
			raise PlanValidationError(f"plan {entry.get('id')} has a duration but no start")
		start = data["start_time"]
		if isinstance(start, str):
			start = datetime.fromisoformat(start)
		data["end_time"] = start + timedelta(minutes=entry["duration_minutes"])
	data.setdefault("created_at", now)

	plan = parse_plan(data)
	validate_micro_horizon(plan, now, horizon_hours)
	return plan


def scenario_clock(scenario: dict[str, Any]) -> ManualClock:
	"""A manual clock set to the scenario's start time."""
	start = scenario.get("start")
	return ManualClock(datetime.fromisoformat(start) if start else None)


async def run_scenario(
	scenario: dict[str, Any],
	config: Optional[Config] = None,
	sink: Optional[NotificationSink] = None,
	clock: Optional[ManualClock] = None,
) -> ScenarioResult:
	"""Replay a scenario and capture feeds and overlaps after each step."""
	config = config or Config()
	clock = clock or scenario_clock(scenario)
	store = InMemoryPlanStore(
		clock,
		micro_plan_horizon_hours=config.micro_plan_horizon_hours,
		queue_size=config.subscription_queue_size,
	)
	sink = sink or InMemoryNotificationSink(clock)
	service = PlanFeedService(store, sink, clock=clock, config=config)
	result = ScenarioResult()

	for user_a, user_b in scenario.get("friendships", []):
		await store.add_friendship(user_a, user_b)

	viewers = list(scenario.get("viewers", []))
	for viewer_id in viewers:
		await service.open_viewer(viewer_id)
	await service.wait_synced()

	rejected: list[str] = []
	for entry in scenario.get("plans", []):
		await _put_plan(store, entry, clock, config, rejected)
	await store.drain()
	result.steps.append(_capture(service, "initial", clock, viewers, rejected))

	for index, step in enumerate(scenario.get("steps", []), start=1):
		rejected = []
		if "advance_minutes" in step:
			clock.advance(minutes=step["advance_minutes"])
			await service.reconciler.sweep()
			label = f"+{step['advance_minutes']}m"
		elif "friendship" in step:
			event = FriendshipEvent.coerce(step["friendship"])
			if event.op == FriendshipOp.ADDED:
				await store.add_friendship(event.user_a, event.user_b)
			else:
				await store.remove_friendship(event.user_a, event.user_b)
			# The service is not started, so the store's friendship stream has no reader
			await service.handle_friendship(event)
			await service.wait_synced()
			label = f"friendship {event.op.value} {event.user_a}/{event.user_b}"
		elif "plan" in step:
			await _put_plan(store, step["plan"], clock, config, rejected)
			label = f"plan {step['plan'].get('id')}"
		elif "delete" in step:
			await store.delete_plan(step["delete"])
			label = f"delete {step['delete']}"
		else:
			raise ValueError(f"Unrecognized scenario step #{index}: {step}")
		await store.drain()
		result.steps.append(_capture(service, label, clock, viewers, rejected))

	result.stats = service.stats()
	await service.stop()
	return result


async def _put_plan(
	store: InMemoryPlanStore,
	entry: dict[str, Any],
	clock: ManualClock,
	config: Config,
	rejected: list[str],
) -> None:
	try:
		plan = _plan_from_entry(entry, clock.now(), config.micro_plan_horizon_hours)
	except PlanValidationError as e:
		logger.warning(f"Rejected scenario plan {entry.get('id')}: {e}")
		rejected.append(f"{entry.get('id')}: {e}")
		return
	await store.put_plan(plan)


def _capture(
	service: PlanFeedService,
	label: str,
	clock: ManualClock,
	viewers: list[str],
	rejected: list[str],
) -> StepResult:
	overlaps: dict[frozenset[str], OverlapRecord] = {}
	for viewer_id in viewers:
		for record in service.get_active_overlaps(viewer_id):
			overlaps[record.key] = record
	return StepResult(
		label=label,
		now=clock.now(),
		feeds={
			v: list(service.feed.snapshot(v)) if service.feed.is_open(v) else []
			for v in viewers
		},
		overlaps=sorted(overlaps.values(), key=lambda r: (r.plan_a_id, r.plan_b_id)),
		rejected=list(rejected),
	)
