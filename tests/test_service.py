"""End-to-end tests for the plan feed service over in-memory collaborators."""

import asyncio
from datetime import timedelta

import pytest

from plansync.clock import ManualClock
from plansync.errors import PlanValidationError
from plansync.memory import InMemoryNotificationSink, InMemoryPlanStore
from plansync.notifier import KIND_FRIEND_ADDED, KIND_OVERLAP
from plansync.service import STALE_FRIENDS, PlanFeedService

from .helpers import (
	COFFEE_LOC,
	T0,
	WALK_LOC,
	FailingSink,
	FlakyPlanStore,
	befriend,
	delete,
	fast_config,
	make_plan,
	settle,
	upsert,
)


def _location(coords, name):
	return {"name": name, "lat": coords[0], "lng": coords[1]}


async def _wait_for(predicate, timeout: float = 1.0) -> None:
	"""Poll until predicate() holds; stream retries sleep in real time."""
	loop = asyncio.get_running_loop()
	deadline = loop.time() + timeout
	while not predicate():
		if loop.time() > deadline:
			raise AssertionError("condition not reached in time")
		await asyncio.sleep(0.005)


def _build(store_cls=InMemoryPlanStore, sink=None, **store_kwargs):
	clock = ManualClock(T0)
	store = store_cls(clock, **store_kwargs)
	sink = sink or InMemoryNotificationSink()
	return clock, store, sink


@pytest.mark.asyncio
async def test_coffee_and_walk_end_to_end():
	clock, store, sink = _build()
	await store.add_friendship("alice", "bob")

	async with PlanFeedService(store, sink, clock=clock, config=fast_config()) as service:
		await service.open_viewer("alice")
		await service.open_viewer("bob")
		await settle()
		assert store.subscriber_count == 2

		coffee = await store.create_plan(
			"alice", "Coffee", T0 + timedelta(hours=1), location=_location(COFFEE_LOC, "Cafe"), plan_id="coffee"
		)
		walk = await store.create_plan(
			"bob", "Walk", T0 + timedelta(hours=2), location=_location(WALK_LOC, "Park"), plan_id="walk"
		)
		await settle()

		assert await service.get_live_feed("alice") == (coffee, walk)
		assert await service.get_live_feed("bob") == (coffee, walk)

		[record] = service.get_active_overlaps("alice")
		assert service.get_active_overlaps("bob") == {record}
		assert 2.2 < record.distance_km < 2.5

		alerts = sink.for_recipient("alice", kind=KIND_OVERLAP)
		assert len(alerts) == 1
		assert alerts[0].payload["planIdSelf"] == "coffee"
		assert alerts[0].payload["timeDeltaHours"] == 1.0

		# Coffee expires once it starts
		clock.advance(hours=1, minutes=1)
		await service.reconciler.sweep()
		assert await service.get_live_feed("bob") == (walk,)
		assert service.get_active_overlaps("bob") == set()

	assert store.subscriber_count == 0


@pytest.mark.asyncio
async def test_delete_retires_overlap_when_nobody_is_watching():
	clock, store, sink = _build()
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())
	coffee = make_plan("coffee", "alice", loc=COFFEE_LOC)
	await service.ingest(upsert(coffee))
	await service.ingest(upsert(make_plan("walk", "bob", start_in=timedelta(hours=2), loc=WALK_LOC)))
	await service.handle_friendship(befriend("alice", "bob"))
	assert len(service.get_active_overlaps("alice")) == 1

	await service.ingest(delete(coffee))
	assert service.get_active_overlaps("alice") == set()
	assert service.get_active_overlaps("bob") == set()
	await service.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("befriend_first", [True, False])
async def test_overlap_without_viewers_does_not_depend_on_event_order(befriend_first):
	clock, store, sink = _build()
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())
	if befriend_first:
		await service.handle_friendship(befriend("alice", "bob"))
	await service.ingest(upsert(make_plan("coffee", "alice", loc=COFFEE_LOC)))
	await service.ingest(upsert(make_plan("walk", "bob", start_in=timedelta(hours=2), loc=WALK_LOC)))
	if not befriend_first:
		await service.handle_friendship(befriend("alice", "bob"))

	[record] = service.get_active_overlaps("bob")
	assert (record.plan_a_id, record.plan_b_id) == ("coffee", "walk")
	await service.stop()


@pytest.mark.asyncio
async def test_moving_a_plan_away_retires_overlap_without_viewers():
	clock, store, sink = _build()
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())
	await service.handle_friendship(befriend("alice", "bob"))
	await service.ingest(upsert(make_plan("coffee", "alice", loc=COFFEE_LOC)))
	await service.ingest(upsert(make_plan("walk", "bob", start_in=timedelta(hours=2), loc=WALK_LOC)))
	assert len(service.get_active_overlaps("alice")) == 1

	# Same plan, now upstate
	await service.ingest(upsert(make_plan("coffee", "alice", loc=(41.5, -74.0))))
	assert service.get_active_overlaps("alice") == set()
	await service.stop()


@pytest.mark.asyncio
async def test_friendship_stream_drives_views_and_subscriptions():
	clock, store, sink = _build()
	async with PlanFeedService(store, sink, clock=clock, config=fast_config()) as service:
		await settle()
		await service.open_viewer("alice")
		tea = await store.create_plan("carol", "Tea", T0 + timedelta(hours=1), plan_id="tea")
		await settle()
		assert service.feed.snapshot("alice") == ()
		assert service.subscribed_owners() == {"alice"}

		await store.add_friendship("alice", "carol")
		await settle()
		assert service.subscribed_owners() == {"alice", "carol"}
		assert service.feed.snapshot("alice") == (tea,)
		assert [n.payload for n in sink.for_recipient("carol", kind=KIND_FRIEND_ADDED)] == [{"friendId": "alice"}]

		await store.remove_friendship("alice", "carol")
		await settle()
		assert service.subscribed_owners() == {"alice"}
		assert service.feed.snapshot("alice") == ()
		assert store.subscriber_count == 1


@pytest.mark.asyncio
async def test_repeated_friendship_event_notifies_once():
	clock, store, sink = _build()
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())
	await service.handle_friendship(befriend("alice", "bob"))
	await service.handle_friendship({"op": "added", "user_a": "bob", "user_b": "alice"})
	assert len(sink.for_recipient("alice", kind=KIND_FRIEND_ADDED)) == 1

	with pytest.raises(PlanValidationError):
		await service.handle_friendship({"op": "added", "user_a": "bob", "user_b": "bob"})
	await service.stop()


@pytest.mark.asyncio
async def test_shared_subscriptions_are_reference_counted():
	clock, store, sink = _build()
	await store.add_friendship("alice", "bob")
	await store.add_friendship("carol", "bob")
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())

	await service.open_viewer("alice")
	await service.open_viewer("carol")
	await settle()
	assert service.subscribed_owners() == {"alice", "bob", "carol"}
	assert store.subscriber_count == 3

	await service.close_viewer("alice")
	assert service.subscribed_owners() == {"bob", "carol"}
	assert store.subscriber_count == 2

	assert await service.close_viewer("carol")
	assert service.subscribed_owners() == set()
	assert store.subscriber_count == 0
	assert not await service.close_viewer("carol")
	await service.stop()


@pytest.mark.asyncio
async def test_friend_lookup_failure_opens_stale_view_then_recovers():
	clock, store, sink = _build(FlakyPlanStore, friend_failures=2)
	await store.add_friendship("alice", "bob")
	walk = await store.create_plan("bob", "Walk", T0 + timedelta(hours=2), plan_id="walk")
	coffee = await store.create_plan("alice", "Coffee", T0 + timedelta(hours=1), plan_id="coffee")
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())

	assert await service.open_viewer("alice") == ()
	await settle()
	assert service.feed.snapshot("alice") == (coffee,)
	assert service.feed.stale_sources("alice") == frozenset({STALE_FRIENDS})
	assert store.friend_calls == 2

	await service.reconciler.sweep()
	await settle()
	assert not service.feed.is_stale("alice")
	assert service.feed.snapshot("alice") == (coffee, walk)
	await service.stop()


@pytest.mark.asyncio
async def test_stream_failure_marks_stale_until_resubscribed():
	clock, store, sink = _build(FlakyPlanStore, subscribe_failures=1_000_000)
	coffee = await store.create_plan("alice", "Coffee", T0 + timedelta(hours=1), plan_id="coffee")
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())

	await service.open_viewer("alice")
	await _wait_for(lambda: service.feed.is_stale("alice"))
	assert service.feed.stale_sources("alice") == frozenset({"owner:alice"})

	store.subscribe_failures = 0
	await _wait_for(lambda: not service.feed.is_stale("alice"))
	assert service.feed.snapshot("alice") == (coffee,)
	await service.stop()


@pytest.mark.asyncio
async def test_plans_deleted_during_outage_are_removed_after_resubscribe():
	clock, store, sink = _build(FlakyPlanStore)
	await store.add_friendship("alice", "bob")
	await store.create_plan(
		"alice", "Coffee", T0 + timedelta(hours=1), location=_location(COFFEE_LOC, "Cafe"), plan_id="coffee"
	)
	walk = await store.create_plan(
		"bob", "Walk", T0 + timedelta(hours=2), location=_location(WALK_LOC, "Park"), plan_id="walk"
	)
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())
	await service.open_viewer("alice")
	await service.open_viewer("bob")
	await service.wait_synced()
	assert len(service.get_active_overlaps("alice")) == 1

	store.break_streams()
	store.subscribe_failures = 1_000_000
	await store.delete_plan("coffee")
	await _wait_for(lambda: service.feed.is_stale("bob"))
	# The delete was lost with the stream; the stale view keeps what it had
	assert [p.id for p in service.feed.snapshot("bob")] == ["coffee", "walk"]

	store.subscribe_failures = 0
	await _wait_for(lambda: not service.feed.is_stale("bob"))
	assert service.feed.snapshot("alice") == (walk,)
	assert service.feed.snapshot("bob") == (walk,)
	assert service.get_active_overlaps("alice") == set()
	await service.stop()


@pytest.mark.asyncio
async def test_owner_without_plans_recovers_from_stream_failure():
	clock, store, sink = _build(FlakyPlanStore, subscribe_failures=3)
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())

	await service.open_viewer("loner")
	await _wait_for(lambda: store.subscribe_failures == 0)
	await service.wait_synced()
	assert not service.feed.is_stale("loner")
	assert service.feed.snapshot("loner") == ()
	await service.stop()


@pytest.mark.asyncio
async def test_wait_synced_covers_initial_replay():
	clock, store, sink = _build()
	await store.add_friendship("alice", "bob")
	coffee = await store.create_plan("alice", "Coffee", T0 + timedelta(hours=1), plan_id="coffee")
	walk = await store.create_plan("bob", "Walk", T0 + timedelta(hours=2), plan_id="walk")
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())

	await service.open_viewer("alice")
	await service.wait_synced()
	assert service.feed.snapshot("alice") == (coffee, walk)
	await service.stop()


@pytest.mark.asyncio
async def test_dead_sink_does_not_block_detection():
	clock, store, _ = _build()
	sink = FailingSink()
	await store.add_friendship("alice", "bob")
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())
	await service.open_viewer("alice")
	await service.open_viewer("bob")
	await settle()

	await store.create_plan("alice", "Coffee", T0 + timedelta(hours=1), location=_location(COFFEE_LOC, "Cafe"))
	await store.create_plan("bob", "Walk", T0 + timedelta(hours=2), location=_location(WALK_LOC, "Park"))
	await _wait_for(lambda: service.emitter.dropped == 2)

	assert len(service.get_active_overlaps("alice")) == 1
	assert service.stats()["notifications_dropped"] == 2
	assert sink.delivered == []
	await service.stop()


@pytest.mark.asyncio
async def test_idle_viewer_is_released(tmp_path):
	clock, store, sink = _build()
	service = PlanFeedService(store, sink, clock=clock, config=fast_config(tmp_path, idle_view_ttl_seconds=60))
	await service.open_viewer("loner")
	await settle()
	assert store.subscriber_count == 1

	clock.advance(seconds=61)
	await service.reconciler.sweep()
	assert not service.feed.is_open("loner")
	assert store.subscriber_count == 0
	await service.stop()


@pytest.mark.asyncio
async def test_get_live_feed_opens_viewer_on_demand():
	clock, store, sink = _build()
	coffee = await store.create_plan("alice", "Coffee", T0 + timedelta(hours=1))
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())

	assert await service.get_live_feed("alice") == ()
	await settle()
	assert await service.get_live_feed("alice") == (coffee,)
	assert service.stats()["viewers"] == 1
	await service.stop()


@pytest.mark.asyncio
async def test_direct_ingest_rejects_malformed_events():
	clock, store, sink = _build()
	service = PlanFeedService(store, sink, clock=clock, config=fast_config())
	with pytest.raises(PlanValidationError):
		await service.ingest({"op": "upsert", "plan": {"id": "x"}})
	await service.stop()


def test_invalid_config_is_rejected():
	clock, store, sink = _build()
	with pytest.raises(ValueError):
		PlanFeedService(store, sink, clock=clock, config=fast_config(max_distance_km=0))
