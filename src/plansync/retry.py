"""Bounded retry with exponential backoff and jitter for collaborator calls."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import CollaboratorUnavailable, PlanValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
	"""How hard to try before declaring a collaborator unavailable."""
	attempts: int = 5
	base_delay: float = 0.5  # seconds
	max_delay: float = 30.0
	jitter: float = 0.2  # fraction of the delay, applied both ways

	def delay_for(self, attempt: int) -> float:
		"""Backoff before retry number `attempt` (0-based)."""
		delay = min(self.max_delay, self.base_delay * (2 ** attempt))
		if self.jitter:
			delay *= 1 + random.uniform(-self.jitter, self.jitter)
		return max(0.0, delay)


async def call_with_retry(
	fn: Callable[..., Awaitable[T]],
	*args,
	policy: RetryPolicy,
	description: str,
	sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	**kwargs,
) -> T:
	"""
	Await fn(*args, **kwargs), retrying failures with backoff.

	Validation errors are not transient and are re-raised immediately.

	Raises:
		CollaboratorUnavailable: If every attempt failed
	"""
	attempts = max(1, policy.attempts)
	last_error: Exception | None = None

	for attempt in range(attempts):
		try:
			return await fn(*args, **kwargs)
		except PlanValidationError:
			raise
		except Exception as e:
			last_error = e
			if attempt == attempts - 1:
				break
			delay = policy.delay_for(attempt)
			logger.warning(
				f"{description} failed (attempt {attempt + 1}/{attempts}): {e}; retrying in {delay:.2f}s"
			)
			await sleep(delay)

	logger.error(f"{description} unavailable after {attempts} attempts: {last_error}")
	raise CollaboratorUnavailable(description, attempts) from last_error
