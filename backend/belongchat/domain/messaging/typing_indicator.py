"""Typing indicators over the ``conversation:{id}:typing`` channel."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from belongchat.infra.auth import CurrentUserProvider
from belongchat.obs import metrics as obs_metrics
from belongchat.settings import settings

from . import topics
from .channels import ChannelRegistry
from .errors import ChannelError, NotAuthenticatedError
from .models import TypingIndicator, utcnow
from .schemas import TypingPayload

logger = logging.getLogger(__name__)

TYPING_EVENT = "typing"

TypingListener = Callable[[TypingIndicator], Any]


class TypingIndicatorChannel:
	def __init__(
		self,
		*,
		connection_id: str,
		conversation_id: str,
		current_user: CurrentUserProvider,
		registry: ChannelRegistry,
		send_interval: Optional[float] = None,
		idle_timeout: Optional[float] = None,
		expiry: Optional[float] = None,
	) -> None:
		self.connection_id = connection_id
		self.conversation_id = conversation_id
		self.topic = topics.conversation_typing(conversation_id)
		self._current_user = current_user
		self._registry = registry
		self._send_interval = settings.typing_send_interval_seconds if send_interval is None else send_interval
		self._idle_timeout = settings.typing_idle_seconds if idle_timeout is None else idle_timeout
		self._expiry = settings.typing_expiry_seconds if expiry is None else expiry
		self._handle = registry.get_or_create(connection_id, self.topic)
		self._detach = self._handle.on(TYPING_EVENT, self._on_typing)
		self._listeners: List[TypingListener] = []
		self._typing: Dict[str, asyncio.TimerHandle] = {}
		self._stop_timer: Optional[asyncio.TimerHandle] = None
		self._tasks: Set[asyncio.Task] = set()
		self._last_sent: Optional[float] = None
		self._started = False
		self._closed = False

	def on_change(self, listener: TypingListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _remove() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _remove

	def typing_users(self) -> frozenset[str]:
		return frozenset(self._typing)

	async def notify_typing(self) -> bool:
		"""Report local typing; returns whether a frame was actually sent."""
		user = self._current_user()
		if user is None:
			raise NotAuthenticatedError()
		if self._closed:
			return False
		loop = asyncio.get_running_loop()
		if self._stop_timer is not None:
			self._stop_timer.cancel()
		self._stop_timer = loop.call_later(self._idle_timeout, self._auto_stop)
		now = loop.time()
		if self._last_sent is not None and now - self._last_sent < self._send_interval:
			return False
		self._last_sent = now
		self._started = True
		await self._publish(user.id, True)
		return True

	async def stop_typing(self) -> bool:
		if self._stop_timer is not None:
			self._stop_timer.cancel()
			self._stop_timer = None
		if not self._started:
			return False
		self._started = False
		self._last_sent = None
		user = self._current_user()
		if user is None:
			return False
		await self._publish(user.id, False)
		return True

	async def close(self, *, release_channel: bool = True) -> None:
		if self._closed:
			return
		if self._started:
			await self.stop_typing()
		self._closed = True
		if self._stop_timer is not None:
			self._stop_timer.cancel()
			self._stop_timer = None
		for timer in self._typing.values():
			timer.cancel()
		self._typing.clear()
		for task in list(self._tasks):
			task.cancel()
		self._tasks.clear()
		self._listeners.clear()
		self._detach()
		if release_channel:
			await self._registry.unsubscribe(self.connection_id, self.topic)

	def _auto_stop(self) -> None:
		self._stop_timer = None
		self._spawn(self.stop_typing())

	async def _publish(self, user_id: str, is_typing: bool) -> None:
		payload = TypingPayload(
			user_id=user_id,
			conversation_id=self.conversation_id,
			is_typing=is_typing,
			timestamp=utcnow(),
		).model_dump(by_alias=True, mode="json")
		try:
			await self._handle.send(TYPING_EVENT, payload)
		except ChannelError:
			logger.debug("typing frame dropped", extra={"topic": self.topic})
			return
		obs_metrics.typing_event("out")

	def _on_typing(self, event: str, payload: dict) -> None:
		try:
			parsed = TypingPayload.model_validate(payload)
		except ValidationError:
			logger.warning("dropping malformed typing frame", extra={"topic": self.topic})
			return
		if parsed.conversation_id != self.conversation_id:
			return
		local = self._current_user()
		if local is not None and parsed.user_id == local.id:
			return
		obs_metrics.typing_event("in")
		previous = self._typing.pop(parsed.user_id, None)
		if previous is not None:
			previous.cancel()
		if parsed.is_typing:
			loop = asyncio.get_running_loop()
			self._typing[parsed.user_id] = loop.call_later(self._expiry, self._expire, parsed.user_id)
			if previous is None:
				self._emit(parsed.user_id, True)
		elif previous is not None:
			self._emit(parsed.user_id, False)

	def _expire(self, user_id: str) -> None:
		if self._typing.pop(user_id, None) is not None:
			self._emit(user_id, False)

	def _emit(self, user_id: str, is_typing: bool) -> None:
		indicator = TypingIndicator(
			user_id=user_id,
			conversation_id=self.conversation_id,
			is_typing=is_typing,
			timestamp=utcnow(),
		)
		for listener in list(self._listeners):
			try:
				result = listener(indicator)
				if inspect.isawaitable(result):
					self._spawn(result)
			except Exception:
				logger.exception("typing listener failed", extra={"topic": self.topic})

	def _spawn(self, awaitable) -> None:
		task = asyncio.ensure_future(awaitable)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)


__all__ = ["TYPING_EVENT", "TypingIndicatorChannel", "TypingListener"]
