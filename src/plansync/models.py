"""
Plan Models - Pydantic schemas for plans, feed diffs and overlaps.

Plans are immutable once built: a new version of a plan is a new object
with the same id, and every view replaces the old version wholesale.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import PlanValidationError


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
	if value is not None and value.tzinfo is None:
		return value.replace(tzinfo=timezone.utc)
	return value


class PlanKind(str, Enum):
	"""What sort of plan this is; decides how it expires."""
	MICRO = "micro"
	EVENT = "event"
	TRAVEL = "travel"


class PlanOp(str, Enum):
	UPSERT = "upsert"
	DELETE = "delete"


class FriendshipOp(str, Enum):
	ADDED = "added"
	REMOVED = "removed"


class Location(BaseModel):
	"""A named place, optionally pinned to coordinates."""
	model_config = ConfigDict(frozen=True)

	name: str = Field(default="", description="Display name of the place")
	lat: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
	lng: Optional[float] = Field(default=None, ge=-180.0, le=180.0)

	@model_validator(mode="after")
	def _both_or_neither(self) -> "Location":
		if (self.lat is None) != (self.lng is None):
			raise ValueError("lat and lng must be given together")
		return self

	@property
	def has_coordinates(self) -> bool:
		return self.lat is not None and self.lng is not None


class Plan(BaseModel):
	"""
	A user-authored, time-bounded activity.

	Micro plans vanish once they start; events and trips stay visible until
	they end (or until they start, when no end time was given).
	"""
	model_config = ConfigDict(frozen=True)

	id: str = Field(min_length=1, description="Store-assigned identifier")
	owner_id: str = Field(min_length=1)
	kind: PlanKind = Field(default=PlanKind.MICRO)
	title: str
	description: Optional[str] = Field(default=None)
	start_time: datetime
	end_time: Optional[datetime] = Field(default=None)
	location: Optional[Location] = Field(default=None)
	metadata: dict[str, Any] = Field(default_factory=dict)
	created_at: Optional[datetime] = Field(default=None)

	@field_validator("start_time", "end_time", "created_at")
	@classmethod
	def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
		return _as_utc(value)

	@model_validator(mode="after")
	def _end_not_before_start(self) -> "Plan":
		if self.end_time is not None and self.end_time < self.start_time:
			raise ValueError("end_time must not be before start_time")
		return self

	@property
	def coordinates(self) -> Optional[tuple[float, float]]:
		if self.location is None or not self.location.has_coordinates:
			return None
		return (self.location.lat, self.location.lng)

	def expires_at(self) -> datetime:
		"""The instant after which the plan drops out of every feed."""
		if self.kind == PlanKind.MICRO:
			return self.start_time
		return self.end_time or self.start_time

	def is_expired(self, now: datetime) -> bool:
		return now > self.expires_at()


class PlanEvent(BaseModel):
	"""A change delivered by the store adapter for a single plan."""
	model_config = ConfigDict(frozen=True)

	op: PlanOp
	plan: Plan

	@classmethod
	def coerce(cls, raw: "PlanEvent | dict[str, Any]") -> "PlanEvent":
		"""Accept an event or its mapping form, rejecting malformed payloads."""
		if isinstance(raw, PlanEvent):
			return raw
		try:
			return cls.model_validate(raw)
		except ValidationError as e:
			raise PlanValidationError(_summarize(e)) from e


class ReplayComplete(BaseModel):
	"""
	End of a subscription's initial replay.

	Every plan that currently exists for the subscribed owners has been
	delivered before this marker; only live changes follow it.
	"""
	model_config = ConfigDict(frozen=True)

	owner_ids: frozenset[str]


class FriendshipEvent(BaseModel):
	"""A symmetric friendship edge being added or removed."""
	model_config = ConfigDict(frozen=True)

	op: FriendshipOp
	user_a: str = Field(min_length=1)
	user_b: str = Field(min_length=1)

	@model_validator(mode="after")
	def _distinct_users(self) -> "FriendshipEvent":
		if self.user_a == self.user_b:
			raise ValueError("a user cannot befriend themselves")
		return self

	@classmethod
	def coerce(cls, raw: "FriendshipEvent | dict[str, Any]") -> "FriendshipEvent":
		if isinstance(raw, FriendshipEvent):
			return raw
		try:
			return cls.model_validate(raw)
		except ValidationError as e:
			raise PlanValidationError(_summarize(e)) from e


class OverlapRecord(BaseModel):
	"""A detected space/time coincidence between two users' plans."""
	model_config = ConfigDict(frozen=True)

	plan_a_id: str
	plan_b_id: str
	owner_a_id: str
	owner_b_id: str
	distance_km: float
	time_delta_hours: float
	detected_at: datetime

	@property
	def key(self) -> frozenset[str]:
		return frozenset((self.plan_a_id, self.plan_b_id))

	@property
	def owners(self) -> frozenset[str]:
		return frozenset((self.owner_a_id, self.owner_b_id))

	def involves(self, user_id: str) -> bool:
		return user_id in (self.owner_a_id, self.owner_b_id)

	def perspective(self, user_id: str) -> tuple[str, str]:
		"""Return (own plan id, friend plan id) as seen by user_id."""
		if user_id == self.owner_a_id:
			return self.plan_a_id, self.plan_b_id
		if user_id == self.owner_b_id:
			return self.plan_b_id, self.plan_a_id
		raise ValueError(f"{user_id} is not part of overlap {sorted(self.key)}")


class OverlapAction(str, Enum):
	ADD = "add"
	REMOVE = "remove"


class OverlapEvent(BaseModel):
	model_config = ConfigDict(frozen=True)

	action: OverlapAction
	record: OverlapRecord


class Notification(BaseModel):
	"""A user-facing alert as handed to the notification sink."""
	id: Optional[int] = Field(default=None)
	recipient_id: str
	kind: str
	payload: dict[str, Any] = Field(default_factory=dict)
	read: bool = Field(default=False)
	created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class FeedDiff:
	"""What changed in one viewer's live view after a single mutation."""
	viewer_id: str
	added: list[Plan] = field(default_factory=list)
	removed: list[Plan] = field(default_factory=list)

	def __bool__(self) -> bool:
		return bool(self.added or self.removed)


def parse_plan(data: dict[str, Any]) -> Plan:
	"""Build a Plan from a mapping, raising PlanValidationError on bad input."""
	try:
		return Plan.model_validate(data)
	except ValidationError as e:
		raise PlanValidationError(_summarize(e)) from e


def validate_micro_horizon(plan: Plan, created_at: datetime, horizon_hours: float) -> None:
	"""
	Check the creation-time lead window for micro plans.

	Only applied when a plan is first created; stored plans are never
	re-checked against a changed horizon.
	"""
	if plan.kind != PlanKind.MICRO:
		return
	created_at = _as_utc(created_at)
	latest = created_at + timedelta(hours=horizon_hours)
	if not (created_at < plan.start_time <= latest):
		raise PlanValidationError(
			f"micro plan {plan.id} must start within {horizon_hours:g}h of creation"
		)


def _summarize(error: ValidationError) -> str:
	parts = []
	for err in error.errors():
		loc = ".".join(str(p) for p in err.get("loc", ()))
		parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
	return "; ".join(parts) or str(error)
