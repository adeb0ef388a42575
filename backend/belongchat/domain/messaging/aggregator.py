"""Merged, sorted view over a user's direct and community conversations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from belongchat.api.pagination import decode_cursor, encode_cursor
from belongchat.infra.auth import AuthenticatedUser, CurrentUserProvider
from belongchat.settings import settings

from .cache import MessageCache
from .errors import InvalidInputError, NotAuthenticatedError
from .models import Conversation, ConversationSummary
from .store import MessageStore


@dataclass(slots=True)
class ConversationPage:
	items: List[ConversationSummary] = field(default_factory=list)
	next_cursor: Optional[str] = None


def _sort_key(last_message_at, conversation_id: str) -> Tuple[int, float, str]:
	# Newest first, conversations without messages last, ties by id.
	if last_message_at is None:
		return (1, 0.0, conversation_id)
	return (0, -last_message_at.timestamp(), conversation_id)


def _summary_key(summary: ConversationSummary) -> Tuple[int, float, str]:
	return _sort_key(summary.conversation.last_message_at, summary.conversation.id)


class ConversationAggregator:
	def __init__(
		self,
		*,
		current_user: CurrentUserProvider,
		cache: MessageCache,
		store: MessageStore,
		page_size: Optional[int] = None,
	) -> None:
		self._current_user = current_user
		self._cache = cache
		self._store = store
		self._page_size = page_size or settings.conversation_page_size

	def _require_user(self) -> AuthenticatedUser:
		user = self._current_user()
		if user is None:
			raise NotAuthenticatedError()
		return user

	async def load(self) -> List[ConversationSummary]:
		"""Fetch every summary for the user and merge it into the cache."""
		user = self._require_user()
		fetched = await self._store.fetch_conversations(user.id)
		for summary in fetched:
			existing = self._cache.summary(summary.target)
			if existing is not None:
				known = existing.conversation
				fresh = summary.conversation
				if known.last_message_at is not None and (
					fresh.last_message_at is None or known.last_message_at > fresh.last_message_at
				):
					fresh.last_message_at = known.last_message_at
					fresh.last_message_preview = known.last_message_preview
					fresh.last_message_sender_id = known.last_message_sender_id
			self._cache.upsert_summary(summary)
		return sorted(self._cache.summaries(), key=_summary_key)

	def summaries(
		self,
		*,
		unread_only: bool = False,
		cursor: Optional[str] = None,
		limit: Optional[int] = None,
	) -> ConversationPage:
		items = sorted(self._cache.summaries(), key=_summary_key)
		if unread_only:
			items = [summary for summary in items if summary.unread_count > 0]
		if cursor:
			try:
				after = _sort_key(*decode_cursor(cursor))
			except ValueError:
				raise InvalidInputError("invalid_cursor") from None
			items = [summary for summary in items if _summary_key(summary) > after]
		size = limit if limit and limit > 0 else self._page_size
		page = items[:size]
		next_cursor = None
		if len(items) > size and page:
			last = page[-1].conversation
			next_cursor = encode_cursor(last.last_message_at, last.id)
		return ConversationPage(items=page, next_cursor=next_cursor)

	async def start_direct_conversation(self, other_user_id: str) -> Conversation:
		user = self._require_user()
		other = (other_user_id or "").strip()
		if not other:
			raise InvalidInputError("other_user_required")
		if other == user.id:
			raise InvalidInputError("cannot_message_self")
		conversation = await self._store.get_or_create_direct_conversation(user.id, other)
		if self._cache.summary(conversation.target) is None:
			self._cache.upsert_summary(ConversationSummary(conversation=conversation))
		return conversation


__all__ = ["ConversationAggregator", "ConversationPage"]
