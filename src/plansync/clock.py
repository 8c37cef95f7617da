"""Injectable clocks so expiry decisions never read wall time implicitly."""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
	"""Anything that can tell the current aware UTC time."""

	def now(self) -> datetime:
		...


class SystemClock:
	"""Wall-clock time in UTC."""

	def now(self) -> datetime:
		return datetime.now(timezone.utc)


class ManualClock:
	"""
	A clock that only moves when told to.

	Used by tests and the scenario simulator to make expiry deterministic.
	"""

	def __init__(self, start: Optional[datetime] = None):
		start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
		if start.tzinfo is None:
			start = start.replace(tzinfo=timezone.utc)
		self._now = start

	def now(self) -> datetime:
		return self._now

	def advance(self, **kwargs) -> datetime:
		"""Move forward by a timedelta built from kwargs (minutes=5, hours=1, ...)."""
		delta = timedelta(**kwargs)
		if delta < timedelta(0):
			raise ValueError("ManualClock cannot move backwards")
		self._now += delta
		return self._now

	def set(self, moment: datetime) -> None:
		if moment.tzinfo is None:
			moment = moment.replace(tzinfo=timezone.utc)
		self._now = moment
