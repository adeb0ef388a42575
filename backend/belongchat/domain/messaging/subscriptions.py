"""Reconcile inbound broadcast events into the per-connection cache."""

from __future__ import annotations

import inspect
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from belongchat.infra.auth import CurrentUserProvider
from belongchat.obs import metrics as obs_metrics
from belongchat.settings import settings

from . import topics
from .cache import MessageCache
from .channels import WILDCARD, ChannelHandle, ChannelRegistry
from .events import (
	BroadcastEvent,
	EventDecodeError,
	MessageCreated,
	MessageDeleted,
	MessageUpdated,
	parse_event,
	to_message,
)
from .models import Message, MessageTarget

logger = logging.getLogger(__name__)

# Called with the applied event and the resulting cached message.
Observer = Callable[[BroadcastEvent, Message], Any]


class MessageSubscriptionProtocol:
	def __init__(
		self,
		*,
		connection_id: str,
		current_user: CurrentUserProvider,
		registry: ChannelRegistry,
		cache: MessageCache,
		rewind_unread_on_delete: Optional[bool] = None,
	) -> None:
		self.connection_id = connection_id
		self._current_user = current_user
		self._registry = registry
		self._cache = cache
		self._rewind_unread_on_delete = (
			settings.rewind_unread_on_delete if rewind_unread_on_delete is None else rewind_unread_on_delete
		)
		self._subscriptions: Dict[str, Tuple[ChannelHandle, Callable[[], None]]] = {}
		self._observers: List[Observer] = []

	def _local_user_id(self) -> Optional[str]:
		user = self._current_user()
		return user.id if user else None

	def add_observer(self, observer: Observer) -> Callable[[], None]:
		self._observers.append(observer)

		def _remove() -> None:
			if observer in self._observers:
				self._observers.remove(observer)

		return _remove

	def is_subscribed(self, target: MessageTarget) -> bool:
		return target.topic in self._subscriptions

	def subscribe(self, target: MessageTarget) -> ChannelHandle:
		return self._attach(target.topic, target)

	def subscribe_user_feed(self) -> Optional[ChannelHandle]:
		"""Listen for direct-conversation notices addressed to the local user."""
		user_id = self._local_user_id()
		if user_id is None:
			return None
		return self._attach(topics.user_conversations(user_id), None)

	async def unsubscribe(self, target: MessageTarget) -> None:
		entry = self._subscriptions.pop(target.topic, None)
		if entry is not None:
			entry[1]()
		await self._registry.unsubscribe(self.connection_id, target.topic)

	async def unsubscribe_all(self) -> None:
		for topic, (_, detach) in list(self._subscriptions.items()):
			detach()
			await self._registry.unsubscribe(self.connection_id, topic)
		self._subscriptions.clear()

	def _attach(self, topic: str, target: Optional[MessageTarget]) -> ChannelHandle:
		handle = self._registry.get_or_create(self.connection_id, topic)
		entry = self._subscriptions.get(topic)
		if entry is not None and entry[0] is handle:
			return handle
		if entry is not None:
			entry[1]()

		async def _listener(event: str, payload: dict) -> None:
			await self._on_frame(event, payload, target)

		self._subscriptions[topic] = (handle, handle.on(WILDCARD, _listener))
		return handle

	async def _on_frame(self, event: str, payload: dict, target: Optional[MessageTarget]) -> None:
		try:
			parsed = parse_event(event, payload, target=target)
		except EventDecodeError:
			obs_metrics.inbound_event(event, "malformed")
			logger.warning("dropping malformed broadcast", extra={"event": event, "connection": self.connection_id})
			return
		if parsed is None:
			logger.debug("ignoring unknown broadcast event", extra={"event": event})
			return
		await self.reconcile(parsed)

	async def reconcile(self, event: BroadcastEvent) -> bool:
		"""Apply one event to the cache; returns whether anything changed."""
		if isinstance(event, MessageCreated):
			message = self._apply_created(event)
		elif isinstance(event, MessageUpdated):
			message = self._apply_updated(event)
		elif isinstance(event, MessageDeleted):
			message = self._apply_deleted(event)
		else:
			raise TypeError(f"unhandled broadcast event: {event!r}")
		obs_metrics.inbound_event(event.kind.value, "applied" if message is not None else "ignored")
		if message is None:
			return False
		for observer in list(self._observers):
			try:
				result = observer(event, message)
				if inspect.isawaitable(result):
					await result
			except Exception:
				logger.exception("message observer failed", extra={"event": event.kind.value})
		return True

	def _apply_created(self, event: MessageCreated) -> Optional[Message]:
		message = to_message(event)
		if not self._cache.insert(message):
			return None
		target = message.target
		last_read = self._cache.last_read_at(target)
		from_other = message.sender_id != self._local_user_id()
		if from_other and (last_read is None or message.created_at > last_read):
			self._cache.count_unread(target, message.id)
		self._cache.apply_to_summary(message)
		return message

	def _apply_updated(self, event: MessageUpdated) -> Optional[Message]:
		payload = event.payload
		existing = self._cache.get_message(payload.message_id)
		if existing is None:
			return None
		updated = replace(existing, content=payload.content, is_edited=True, updated_at=payload.sent_at)
		self._cache.replace(updated)
		self._cache.refresh_preview(updated)
		return updated

	def _apply_deleted(self, event: MessageDeleted) -> Optional[Message]:
		payload = event.payload
		removed = self._cache.remove(payload.message_id, tombstone=True)
		if removed is None:
			return None
		target = removed.target
		if self._rewind_unread_on_delete and removed.sender_id != self._local_user_id():
			self._cache.uncount_unread(target, removed.id)
		deleted = replace(removed, is_deleted=True, updated_at=payload.sent_at)
		self._cache.refresh_preview(deleted)
		return deleted


__all__ = ["MessageSubscriptionProtocol", "Observer"]
