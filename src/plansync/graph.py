"""Local cache of the symmetric friendship graph."""

import logging

logger = logging.getLogger(__name__)


class FriendGraph:
	"""
	Undirected, idempotent friendship edges.

	Populated from the store adapter when a viewer is opened and kept
	current by friendship events. Used to route plan events and decide
	visibility without I/O.
	"""

	def __init__(self):
		self._edges: dict[str, set[str]] = {}

	def add(self, user_a: str, user_b: str) -> bool:
		"""Add an edge. Returns True if it was not already present."""
		if user_a == user_b:
			raise ValueError("a user cannot befriend themselves")
		if user_b in self._edges.get(user_a, ()):
			return False
		self._edges.setdefault(user_a, set()).add(user_b)
		self._edges.setdefault(user_b, set()).add(user_a)
		return True

	def remove(self, user_a: str, user_b: str) -> bool:
		"""Remove an edge. Returns True if it existed."""
		if user_b not in self._edges.get(user_a, ()):
			return False
		self._discard(user_a, user_b)
		self._discard(user_b, user_a)
		return True

	def _discard(self, user: str, other: str) -> None:
		friends = self._edges.get(user)
		if friends is None:
			return
		friends.discard(other)
		if not friends:
			del self._edges[user]

	def are_friends(self, user_a: str, user_b: str) -> bool:
		return user_b in self._edges.get(user_a, ())

	def friends_of(self, user_id: str) -> frozenset[str]:
		return frozenset(self._edges.get(user_id, ()))

	def diff_friends(self, user_id: str, friends: set[str]) -> tuple[set[str], set[str]]:
		"""Compare a fresh friend list with the cache: (to_add, to_remove)."""
		current = self._edges.get(user_id, set())
		friends = {f for f in friends if f != user_id}
		return friends - current, current - friends

	def forget(self, user_id: str) -> None:
		"""Drop every edge touching user_id."""
		for other in list(self._edges.get(user_id, ())):
			self.remove(user_id, other)
