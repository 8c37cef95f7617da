"""Tests for collaborator retry with backoff."""

import pytest

from plansync.errors import CollaboratorUnavailable, PlanValidationError
from plansync.retry import RetryPolicy, call_with_retry


class Recorder:
	def __init__(self):
		self.delays: list[float] = []

	async def __call__(self, delay: float) -> None:
		self.delays.append(delay)


def flaky(failures: int, result="ok"):
	state = {"calls": 0}

	async def fn():
		state["calls"] += 1
		if state["calls"] <= failures:
			raise ConnectionError("down")
		return result

	return fn, state


class TestRetryPolicy:
	def test_delay_grows_exponentially(self):
		policy = RetryPolicy(base_delay=1.0, max_delay=100.0, jitter=0.0)
		assert [policy.delay_for(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

	def test_delay_is_capped(self):
		policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
		assert policy.delay_for(10) == 5.0

	def test_jitter_stays_within_bounds(self):
		policy = RetryPolicy(base_delay=1.0, max_delay=100.0, jitter=0.25)
		for _ in range(50):
			assert 1.5 <= policy.delay_for(1) <= 2.5


class TestCallWithRetry:
	@pytest.mark.asyncio
	async def test_returns_after_transient_failures(self):
		fn, state = flaky(failures=2)
		sleep = Recorder()
		result = await call_with_retry(
			fn, policy=RetryPolicy(attempts=3, jitter=0.0), description="lookup", sleep=sleep
		)
		assert result == "ok"
		assert state["calls"] == 3
		assert len(sleep.delays) == 2

	@pytest.mark.asyncio
	async def test_raises_collaborator_unavailable_when_exhausted(self):
		fn, state = flaky(failures=10)
		sleep = Recorder()
		with pytest.raises(CollaboratorUnavailable) as exc_info:
			await call_with_retry(fn, policy=RetryPolicy(attempts=3), description="lookup", sleep=sleep)
		assert state["calls"] == 3
		assert exc_info.value.attempts == 3
		assert isinstance(exc_info.value.__cause__, ConnectionError)
		# No sleep after the final attempt
		assert len(sleep.delays) == 2

	@pytest.mark.asyncio
	async def test_validation_errors_are_not_retried(self):
		calls = []

		async def fn():
			calls.append(1)
			raise PlanValidationError("bad plan")

		with pytest.raises(PlanValidationError):
			await call_with_retry(fn, policy=RetryPolicy(attempts=5), description="x", sleep=Recorder())
		assert len(calls) == 1

	@pytest.mark.asyncio
	async def test_passes_arguments_through(self):
		async def add(a, b, scale=1):
			return (a + b) * scale

		result = await call_with_retry(add, 2, 3, scale=10, policy=RetryPolicy(), description="add")
		assert result == 50
