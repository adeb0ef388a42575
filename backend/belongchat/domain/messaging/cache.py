"""Per-connection projection of messages, summaries and unread state.

Everything here is reconstructible from the durable store; it lives for as
long as the connection that owns it.
"""

from __future__ import annotations

import bisect
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from belongchat.settings import settings

from .models import (
	Conversation,
	ConversationSummary,
	ConversationType,
	Message,
	MessageTarget,
	preview_for,
	utcnow,
)


class MessageCache:
	def __init__(self, *, preview_length: Optional[int] = None, id_history: Optional[int] = None) -> None:
		self.preview_length = preview_length or settings.message_preview_length
		self.id_history = id_history or settings.message_id_history
		self._messages: Dict[MessageTarget, List[Message]] = {}
		self._index: Dict[str, MessageTarget] = {}
		self._seen_at: Dict[str, datetime] = {}
		# Insertion-ordered so the oldest ids can be evicted.
		self._tombstones: Dict[str, None] = {}
		self._counted: Dict[str, None] = {}
		self._pending: Dict[str, MessageTarget] = {}
		self._unread: Dict[MessageTarget, int] = {}
		self._last_read: Dict[MessageTarget, Optional[datetime]] = {}
		self._summaries: Dict[MessageTarget, ConversationSummary] = {}

	# messages

	def _remember(self, history: Dict[str, None], message_id: str) -> None:
		history.pop(message_id, None)
		history[message_id] = None
		while len(history) > self.id_history:
			del history[next(iter(history))]

	def messages(self, target: MessageTarget) -> List[Message]:
		return list(self._messages.get(target, ()))

	def get_message(self, message_id: str) -> Optional[Message]:
		target = self._index.get(message_id)
		if target is None:
			return None
		for message in self._messages.get(target, ()):
			if message.id == message_id:
				return message
		return None

	def has_message(self, message_id: str) -> bool:
		return message_id in self._index

	def is_tombstoned(self, message_id: str) -> bool:
		return message_id in self._tombstones

	def insert(self, message: Message) -> bool:
		"""Add ``message`` in created_at order unless known or tombstoned."""
		if message.id in self._index or message.id in self._tombstones:
			return False
		bucket = self._messages.setdefault(message.target, [])
		keys = [item.created_at for item in bucket]
		bucket.insert(bisect.bisect_right(keys, message.created_at), message)
		self._index[message.id] = message.target
		self._seen_at[message.id] = utcnow()
		return True

	def replace(self, message: Message) -> bool:
		target = self._index.get(message.id)
		if target is None:
			return False
		bucket = self._messages[target]
		for position, existing in enumerate(bucket):
			if existing.id == message.id:
				bucket[position] = message
				return True
		return False

	def remove(self, message_id: str, *, tombstone: bool = False) -> Optional[Message]:
		if tombstone:
			self._remember(self._tombstones, message_id)
		target = self._index.pop(message_id, None)
		self._seen_at.pop(message_id, None)
		if target is None:
			return None
		bucket = self._messages.get(target, [])
		for position, existing in enumerate(bucket):
			if existing.id == message_id:
				return bucket.pop(position)
		return None

	def merge_authoritative(
		self,
		target: MessageTarget,
		messages: Iterable[Message],
		*,
		grace_seconds: Optional[float] = None,
	) -> List[Message]:
		"""Replace the target's list with a store read.

		Provisional entries the store does not know are kept while younger than
		the grace period, then dropped.
		"""
		grace = settings.provisional_grace_seconds if grace_seconds is None else grace_seconds
		cutoff = utcnow() - timedelta(seconds=grace)
		authoritative = {
			message.id: message.confirmed()
			for message in messages
			if not message.is_deleted and message.id not in self._tombstones
		}
		keep = [
			message
			for message in self._messages.get(target, ())
			if message.provisional and message.id not in authoritative and self._seen_at.get(message.id, cutoff) > cutoff
		]
		merged = sorted([*authoritative.values(), *keep], key=lambda item: (item.created_at, item.id))
		kept = {message.id for message in merged}
		for message in self._messages.get(target, ()):
			self._index.pop(message.id, None)
			if message.id not in kept:
				self._seen_at.pop(message.id, None)
		self._messages[target] = merged
		now = utcnow()
		for message in merged:
			self._index[message.id] = target
			self._seen_at.setdefault(message.id, now)
		return list(merged)

	# unread state

	def unread(self, target: MessageTarget) -> int:
		return self._unread.get(target, 0)

	def unread_counts(self) -> Dict[MessageTarget, int]:
		return dict(self._unread)

	def set_unread(self, target: MessageTarget, count: int) -> None:
		self._unread[target] = max(0, int(count))
		summary = self._summaries.get(target)
		if summary is not None:
			summary.unread_count = self._unread[target]

	def count_unread(self, target: MessageTarget, message_id: str) -> bool:
		"""Increment once per message id; later duplicates are ignored."""
		if message_id in self._counted:
			return False
		self._remember(self._counted, message_id)
		self._pending[message_id] = target
		self.set_unread(target, self.unread(target) + 1)
		return True

	def uncount_unread(self, target: MessageTarget, message_id: str) -> bool:
		"""Rewind a count for a message that is still unread."""
		if self._pending.pop(message_id, None) is None or self.unread(target) == 0:
			return False
		self.set_unread(target, self.unread(target) - 1)
		return True

	def reset_unread(self, target: MessageTarget) -> List[str]:
		"""Zero the counter; returns the ids that were still pending."""
		dropped = [key for key, owner in self._pending.items() if owner == target]
		for message_id in dropped:
			del self._pending[message_id]
		self.set_unread(target, 0)
		return dropped

	def restore_unread(self, target: MessageTarget, count: int, pending: Iterable[str]) -> None:
		for message_id in pending:
			self._pending[message_id] = target
		self.set_unread(target, count)

	def total_unread(self, kind: Optional[ConversationType] = None) -> int:
		return sum(count for target, count in self._unread.items() if kind is None or target.kind is kind)

	def last_read_at(self, target: MessageTarget) -> Optional[datetime]:
		return self._last_read.get(target)

	def set_last_read_at(self, target: MessageTarget, value: Optional[datetime]) -> None:
		self._last_read[target] = value
		summary = self._summaries.get(target)
		if summary is not None:
			summary.last_read_at = value

	# summaries

	def summary(self, target: MessageTarget) -> Optional[ConversationSummary]:
		return self._summaries.get(target)

	def summaries(self) -> List[ConversationSummary]:
		return list(self._summaries.values())

	def upsert_summary(self, summary: ConversationSummary) -> None:
		target = summary.target
		self._summaries[target] = summary
		self._unread[target] = summary.unread_count
		self._last_read[target] = summary.last_read_at

	def apply_to_summary(self, message: Message) -> bool:
		target = message.target
		summary = self._summaries.get(target)
		if summary is None:
			conversation = Conversation(
				id=target.id,
				type=target.kind,
				created_at=message.created_at,
				updated_at=message.created_at,
				community_id=target.community_id,
			)
			summary = ConversationSummary(
				conversation=conversation,
				unread_count=self.unread(target),
				last_read_at=self.last_read_at(target),
			)
			self._summaries[target] = summary
		return summary.conversation.apply_message(message, preview_length=self.preview_length)

	def refresh_preview(self, message: Message) -> None:
		"""Re-render the summary preview when ``message`` is the latest one."""
		summary = self._summaries.get(message.target)
		if summary is not None and summary.conversation.last_message_at == message.created_at:
			summary.conversation.last_message_preview = preview_for(message, self.preview_length)

	def clear(self) -> None:
		self._messages.clear()
		self._index.clear()
		self._seen_at.clear()
		self._tombstones.clear()
		self._counted.clear()
		self._pending.clear()
		self._unread.clear()
		self._last_read.clear()
		self._summaries.clear()


__all__ = ["MessageCache"]
