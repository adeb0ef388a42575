"""Per-user read/unread state for conversations and communities."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from belongchat.infra.auth import AuthenticatedUser, CurrentUserProvider
from belongchat.obs import metrics as obs_metrics
from belongchat.settings import settings

from .cache import MessageCache
from .errors import NotAuthenticatedError
from .models import ConversationType, MessageTarget, utcnow
from .store import MessageStore

logger = logging.getLogger(__name__)


class ReadStateTracker:
	"""Keeps the cached unread counters honest against the durable store.

	``mark_as_read`` updates the cache first and rolls it back if the store
	rejects the write, so the two never disagree for longer than one round
	trip. Counters that drift from what the cached messages imply are
	refreshed from the store once the drift outlives the grace period.
	"""

	def __init__(
		self,
		*,
		current_user: CurrentUserProvider,
		cache: MessageCache,
		store: MessageStore,
		reconcile_grace_seconds: Optional[float] = None,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._current_user = current_user
		self._cache = cache
		self._store = store
		self._grace = (
			settings.unread_reconcile_grace_seconds if reconcile_grace_seconds is None else reconcile_grace_seconds
		)
		self._clock = clock
		self._divergent_since: Dict[MessageTarget, float] = {}

	def _require_user(self) -> AuthenticatedUser:
		user = self._current_user()
		if user is None:
			raise NotAuthenticatedError()
		return user

	def unread_count(self, target: MessageTarget) -> int:
		return self._cache.unread(target)

	def total_unread(self, kind: Optional[ConversationType] = None) -> int:
		return self._cache.total_unread(kind)

	def computed_unread(self, target: MessageTarget) -> int:
		user = self._current_user()
		user_id = user.id if user else None
		last_read = self._cache.last_read_at(target)
		return sum(
			1
			for message in self._cache.messages(target)
			if not message.is_deleted
			and message.sender_id != user_id
			and (last_read is None or message.created_at > last_read)
		)

	async def mark_as_read(self, target: MessageTarget) -> bool:
		user = self._require_user()
		if self._cache.unread(target) == 0 and self.computed_unread(target) == 0:
			# Targets this connection never subscribed to keep counting in the store.
			stored = (await self._store.fetch_unread_counts(user.id)).get(target, 0)
			if stored == 0:
				obs_metrics.read_marked("noop")
				return False
			self._cache.set_unread(target, stored)

		previous_read_at = self._cache.last_read_at(target)
		previous_count = self._cache.unread(target)
		read_at = utcnow()
		self._cache.set_last_read_at(target, read_at)
		dropped = self._cache.reset_unread(target)
		try:
			await self._store.mark_conversation_read(target, user.id, read_at)
		except Exception:
			self._cache.set_last_read_at(target, previous_read_at)
			self._cache.restore_unread(target, previous_count, dropped)
			obs_metrics.read_marked("error")
			logger.warning("mark as read failed", extra={"target": str(target)})
			raise
		self._divergent_since.pop(target, None)
		obs_metrics.read_marked("ok")
		return True

	async def refresh(self) -> Dict[MessageTarget, int]:
		user = self._require_user()
		counts = await self._store.fetch_unread_counts(user.id)
		for target, count in counts.items():
			if self._cache.unread(target) != count:
				self._cache.set_unread(target, count)
		self._divergent_since.clear()
		return counts

	async def reconcile(self, target: MessageTarget) -> bool:
		"""Refresh from the store if the counter has drifted past the grace period."""
		if self._cache.unread(target) == self.computed_unread(target):
			self._divergent_since.pop(target, None)
			return False
		now = self._clock()
		since = self._divergent_since.setdefault(target, now)
		if now - since < self._grace:
			return False
		await self.refresh()
		obs_metrics.unread_resynced()
		logger.info("unread counter resynced", extra={"target": str(target), "unread": self._cache.unread(target)})
		if self._cache.unread(target) != self.computed_unread(target):
			self._divergent_since[target] = now
		return True


__all__ = ["ReadStateTracker"]
