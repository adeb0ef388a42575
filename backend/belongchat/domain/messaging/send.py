"""Optimistic message sending.

A send inserts locally, broadcasts, then persists. Broadcast trouble never
fails a send; a failed durable write rolls the local copy back and raises.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Dict, Optional

from belongchat.infra.auth import AuthenticatedUser, CurrentUserProvider
from belongchat.obs import metrics as obs_metrics
from belongchat.settings import settings

from . import topics
from .cache import MessageCache
from .channels import ChannelRegistry
from .errors import ChannelError, InvalidInputError, MessagingError, NotAuthenticatedError, SendFailedError
from .events import BroadcastEvent, MessageCreated, MessageDeleted, MessagePayload, MessageUpdated
from .models import ConversationType, Message, MessageTarget, SendResult, SendState, utcnow
from .schemas import SendMessageRequest
from .store import MessageStore

logger = logging.getLogger(__name__)


class SendPipeline:
	def __init__(
		self,
		*,
		connection_id: str,
		current_user: CurrentUserProvider,
		registry: ChannelRegistry,
		cache: MessageCache,
		store: MessageStore,
		max_length: Optional[int] = None,
		results_retained: Optional[int] = None,
	) -> None:
		self.connection_id = connection_id
		self._current_user = current_user
		self._registry = registry
		self._cache = cache
		self._store = store
		self._max_length = max_length or settings.message_max_length
		self._results_retained = results_retained or settings.send_results_retained
		self._results: Dict[str, SendResult] = {}

	def _require_user(self) -> AuthenticatedUser:
		user = self._current_user()
		if user is None:
			raise NotAuthenticatedError()
		return user

	def _clean_content(self, content: str) -> str:
		cleaned = (content or "").strip()
		if not cleaned:
			raise InvalidInputError("content_required")
		if len(cleaned) > self._max_length:
			raise InvalidInputError("content_too_long")
		return cleaned

	def status(self, message_id: str) -> Optional[SendResult]:
		return self._results.get(message_id)

	def _track(self, result: SendResult) -> None:
		self._results[result.message_id] = result
		# Evict the oldest settled results; pending sends are never dropped.
		if len(self._results) <= self._results_retained:
			return
		for message_id, tracked in list(self._results.items()):
			if len(self._results) <= self._results_retained:
				break
			if tracked.state is not SendState.PENDING:
				del self._results[message_id]

	async def send(self, request: SendMessageRequest) -> Message:
		target = request.target
		content = self._clean_content(request.content)
		user = self._require_user()

		now = utcnow()
		message = Message(
			id=str(uuid.uuid4()),
			sender_id=user.id,
			content=content,
			created_at=now,
			updated_at=now,
			conversation_id=target.conversation_id,
			community_id=target.community_id,
			provisional=True,
		)
		result = SendResult(message_id=message.id, target=target)
		self._track(result)

		summary = self._cache.summary(target)
		previous = None
		if summary is not None:
			conversation = summary.conversation
			previous = (conversation.last_message_at, conversation.last_message_preview, conversation.last_message_sender_id)
		self._cache.insert(message)
		self._cache.apply_to_summary(message)

		await self._broadcast(target.topic, MessageCreated(MessagePayload.from_message(message)))

		try:
			stored = await self._store.create_message(message)
		except MessagingError as exc:
			self._rollback(result, message, previous, exc)
			raise
		except Exception as exc:
			self._rollback(result, message, previous, exc)
			logger.exception("durable write failed", extra={"message_id": message.id, "target": str(target)})
			raise SendFailedError("send_failed", message_id=message.id) from exc

		confirmed = stored.confirmed()
		self._cache.replace(confirmed)
		self._cache.apply_to_summary(confirmed)
		result.state = SendState.CONFIRMED
		result.message = confirmed
		obs_metrics.message_sent(SendState.CONFIRMED.value)
		logger.info("message sent", extra={"message_id": confirmed.id, "target": str(target)})

		if target.kind is ConversationType.DIRECT:
			await self._notify_counterpart(confirmed, user.id)
		return confirmed

	async def edit(self, message_id: str, content: str) -> Message:
		cleaned = self._clean_content(content)
		user = self._require_user()
		stored = (await self._store.update_message(message_id, user.id, cleaned)).confirmed()
		self._cache.replace(stored)
		self._cache.refresh_preview(stored)
		await self._broadcast(
			stored.target.topic,
			MessageUpdated(MessagePayload.from_message(stored, sent_at=stored.updated_at)),
		)
		return stored

	async def delete(self, message_id: str) -> Message:
		user = self._require_user()
		stored = (await self._store.delete_message(message_id, user.id)).confirmed()
		self._cache.remove(message_id, tombstone=True)
		self._cache.refresh_preview(stored)
		payload = replace(MessagePayload.from_message(stored, sent_at=stored.updated_at), content="")
		await self._broadcast(stored.target.topic, MessageDeleted(payload))
		return stored

	def _rollback(
		self,
		result: SendResult,
		message: Message,
		previous: Optional[tuple],
		exc: BaseException,
	) -> None:
		result.state = SendState.FAILED
		result.error = exc
		obs_metrics.message_sent(SendState.FAILED.value)
		self._cache.remove(message.id)
		summary = self._cache.summary(message.target)
		if summary is None or summary.conversation.last_message_at != message.created_at:
			return
		conversation = summary.conversation
		if previous is None:
			conversation.last_message_at = None
			conversation.last_message_preview = None
			conversation.last_message_sender_id = None
		else:
			conversation.last_message_at, conversation.last_message_preview, conversation.last_message_sender_id = previous

	async def _broadcast(self, topic: str, event: BroadcastEvent) -> None:
		handle = self._registry.get_or_create(self.connection_id, topic)
		try:
			await handle.send(event.kind.value, event.payload.to_wire())
		except ChannelError:
			logger.warning(
				"broadcast failed",
				extra={"event": event.kind.value, "topic": topic, "message_id": event.payload.message_id},
			)

	async def _notify_counterpart(self, message: Message, user_id: str) -> None:
		target: MessageTarget = message.target
		summary = self._cache.summary(target)
		participants = summary.conversation.participant_ids if summary is not None else ()
		try:
			if not participants:
				conversation = await self._store.get_conversation(str(message.conversation_id))
				participants = conversation.participant_ids if conversation is not None else ()
			other = next((participant for participant in participants if participant != user_id), None)
			if other is None:
				return
			event = MessageCreated(MessagePayload.from_message(message))
			await self._registry.publish(
				self.connection_id,
				topics.user_conversations(other),
				event.kind.value,
				event.payload.to_wire(),
			)
		except Exception:
			logger.warning("counterpart notice failed", extra={"message_id": message.id}, exc_info=True)


__all__ = ["SendPipeline"]
