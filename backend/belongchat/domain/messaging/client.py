"""Per-connection messaging facade."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import ulid

from belongchat.infra.auth import CurrentUserProvider
from belongchat.settings import settings

from .aggregator import ConversationAggregator
from .cache import MessageCache
from .channels import ChannelRegistry, get_registry
from .errors import ChannelError
from .models import Message, MessageTarget
from .moderation import ModerationService
from .read_state import ReadStateTracker
from .schemas import SendMessageRequest
from .send import SendPipeline
from .store import MessageStore, get_store
from .subscriptions import MessageSubscriptionProtocol
from .typing_indicator import TypingIndicatorChannel

logger = logging.getLogger(__name__)


class MessagingClient:
	"""Everything one connection needs, sharing a cache and a connection id.

	The registry is shared across connections; the rest is private to the
	connection and torn down by ``close``.
	"""

	def __init__(
		self,
		*,
		current_user: CurrentUserProvider,
		registry: Optional[ChannelRegistry] = None,
		store: Optional[MessageStore] = None,
		connection_id: Optional[str] = None,
	) -> None:
		self.connection_id = connection_id or str(ulid.new())
		self.current_user = current_user
		self.registry = registry or get_registry()
		self.store = store or get_store()
		self.cache = MessageCache()
		self.subscriptions = MessageSubscriptionProtocol(
			connection_id=self.connection_id,
			current_user=current_user,
			registry=self.registry,
			cache=self.cache,
		)
		self.pipeline = SendPipeline(
			connection_id=self.connection_id,
			current_user=current_user,
			registry=self.registry,
			cache=self.cache,
			store=self.store,
		)
		self.read_state = ReadStateTracker(current_user=current_user, cache=self.cache, store=self.store)
		self.aggregator = ConversationAggregator(current_user=current_user, cache=self.cache, store=self.store)
		self.moderation = ModerationService(current_user=current_user, store=self.store)
		self._typing: Dict[str, TypingIndicatorChannel] = {}
		self._closed = False

	async def start(self) -> None:
		"""Subscribe to the user's notice feed and load conversation summaries."""
		handle = self.subscriptions.subscribe_user_feed()
		if handle is not None:
			try:
				await handle.wait_subscribed()
			except ChannelError:
				logger.warning("user feed unavailable", extra={"connection": self.connection_id})
		await self.aggregator.load()

	async def open(self, target: MessageTarget, *, limit: Optional[int] = None) -> List[Message]:
		"""Subscribe to ``target`` and merge an authoritative page into the cache."""
		handle = self.subscriptions.subscribe(target)
		try:
			await handle.wait_subscribed()
		except ChannelError:
			logger.warning("opening target without a live channel", extra={"target": str(target)})
		messages = await self.store.fetch_messages(target, limit=limit or settings.message_page_size)
		merged = self.cache.merge_authoritative(target, messages)
		await self.read_state.reconcile(target)
		return merged

	async def close_target(self, target: MessageTarget) -> None:
		await self.subscriptions.unsubscribe(target)
		if target.conversation_id:
			channel = self._typing.pop(target.conversation_id, None)
			if channel is not None:
				await channel.close()

	async def send(self, request: SendMessageRequest) -> Message:
		return await self.pipeline.send(request)

	async def mark_as_read(self, target: MessageTarget) -> bool:
		return await self.read_state.mark_as_read(target)

	def typing(self, conversation_id: str) -> TypingIndicatorChannel:
		channel = self._typing.get(conversation_id)
		if channel is None:
			channel = TypingIndicatorChannel(
				connection_id=self.connection_id,
				conversation_id=conversation_id,
				current_user=self.current_user,
				registry=self.registry,
			)
			self._typing[conversation_id] = channel
		return channel

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		for channel in list(self._typing.values()):
			await channel.close(release_channel=False)
		self._typing.clear()
		await self.subscriptions.unsubscribe_all()
		await self.registry.unsubscribe_all(self.connection_id)
		self.cache.clear()


__all__ = ["MessagingClient"]
