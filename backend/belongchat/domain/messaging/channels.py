"""Per-connection broadcast channels.

A connection holds at most one channel per topic. Handles are cached in the
registry and shared by every caller on that connection; the first access
schedules the transport subscribe and later accesses reuse the handle.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import suppress
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from belongchat.obs import metrics as obs_metrics
from belongchat.settings import settings

from .errors import ChannelError, InvalidInputError
from .topics import Topic
from .transport import Transport, TransportSubscription, build_transport

logger = logging.getLogger(__name__)

WILDCARD = "*"

Listener = Callable[[str, dict], Any]


class ChannelState(str, Enum):
	UNSUBSCRIBED = "unsubscribed"
	SUBSCRIBING = "subscribing"
	SUBSCRIBED = "subscribed"
	ERROR = "error"
	CLOSED = "closed"


class ChannelHandle:
	def __init__(
		self,
		connection_id: str,
		topic: str,
		transport: Transport,
		*,
		broadcast_self: bool = False,
		subscribe_timeout: float = 10.0,
	) -> None:
		self.connection_id = connection_id
		self.topic = topic
		self.state = ChannelState.UNSUBSCRIBED
		self.last_error: Optional[BaseException] = None
		self._transport = transport
		self._broadcast_self = broadcast_self
		self._subscribe_timeout = subscribe_timeout
		self._listeners: Dict[str, List[Listener]] = {}
		self._queue: asyncio.Queue[dict] = asyncio.Queue()
		self._subscription: Optional[TransportSubscription] = None
		self._subscribe_task: Optional[asyncio.Task] = None
		self._dispatcher: Optional[asyncio.Task] = None

	def __repr__(self) -> str:
		return f"ChannelHandle(connection_id={self.connection_id!r}, topic={self.topic!r}, state={self.state.value})"

	def on(self, event: str, listener: Listener) -> Callable[[], None]:
		"""Attach ``listener`` for ``event`` (or ``"*"``); returns a detach callable."""
		self._listeners.setdefault(event, []).append(listener)

		def _detach() -> None:
			listeners = self._listeners.get(event)
			if listeners and listener in listeners:
				listeners.remove(listener)

		return _detach

	def start(self) -> None:
		"""Schedule a subscribe unless one is already live or pending."""
		if self.state in (ChannelState.CLOSED, ChannelState.SUBSCRIBING, ChannelState.SUBSCRIBED):
			return
		loop = asyncio.get_running_loop()
		if self._dispatcher is None:
			self._dispatcher = loop.create_task(self._dispatch_loop(), name=f"channel-dispatch:{self.topic}")
		self.state = ChannelState.SUBSCRIBING
		self._subscribe_task = loop.create_task(self._subscribe(), name=f"channel-subscribe:{self.topic}")

	async def wait_subscribed(self, timeout: Optional[float] = None) -> None:
		task = self._subscribe_task
		if task is not None and not task.done():
			await asyncio.wait({task}, timeout=timeout if timeout is not None else self._subscribe_timeout)
		if self.state is not ChannelState.SUBSCRIBED:
			raise ChannelError(f"channel_{self.state.value}")

	async def send(self, event: str, payload: dict) -> None:
		if self.state is ChannelState.CLOSED:
			raise ChannelError("channel_closed")
		frame = {"origin": self.connection_id, "event": event, "payload": payload}
		try:
			await self._transport.publish(self.topic, frame)
		except Exception as exc:
			obs_metrics.broadcast(event, "error")
			self._mark_error(exc)
			raise ChannelError("broadcast_failed") from exc
		obs_metrics.broadcast(event, "ok")

	async def drain(self) -> None:
		"""Wait until every frame received so far has been dispatched."""
		await self._queue.join()

	async def close(self) -> None:
		if self.state is ChannelState.CLOSED:
			return
		self.state = ChannelState.CLOSED
		self._listeners.clear()
		subscribe_task, self._subscribe_task = self._subscribe_task, None
		if subscribe_task is not None and not subscribe_task.done() and subscribe_task is not asyncio.current_task():
			subscribe_task.cancel()
			with suppress(asyncio.CancelledError):
				await subscribe_task
		dispatcher, self._dispatcher = self._dispatcher, None
		if dispatcher is not None and dispatcher is not asyncio.current_task():
			dispatcher.cancel()
			with suppress(asyncio.CancelledError):
				await dispatcher
		while not self._queue.empty():
			self._queue.get_nowait()
			self._queue.task_done()
		await self._release_subscription()

	async def _subscribe(self) -> None:
		# A previous subscription survives a transport error until we retry.
		await self._release_subscription()
		try:
			subscription = await asyncio.wait_for(
				self._transport.subscribe(self.topic, self._deliver, on_error=self._mark_error),
				timeout=self._subscribe_timeout,
			)
		except asyncio.CancelledError:
			raise
		except Exception as exc:
			if self.state is ChannelState.CLOSED:
				return
			obs_metrics.channel_subscribe("error")
			logger.warning(
				"channel subscribe failed",
				extra={"event": "channel_subscribe", "topic": self.topic, "error": type(exc).__name__},
			)
			self.state = ChannelState.ERROR
			self.last_error = exc
			return
		if self.state is ChannelState.CLOSED:
			await subscription.close()
			return
		self._subscription = subscription
		self.state = ChannelState.SUBSCRIBED
		self.last_error = None
		obs_metrics.channel_subscribe("ok")
		logger.debug("channel subscribed", extra={"event": "channel_subscribe", "topic": self.topic})

	async def _release_subscription(self) -> None:
		subscription, self._subscription = self._subscription, None
		if subscription is None:
			return
		try:
			await subscription.close()
		except Exception:
			logger.warning("channel teardown failed", extra={"topic": self.topic}, exc_info=True)

	def _mark_error(self, exc: BaseException) -> None:
		if self.state is ChannelState.CLOSED:
			return
		self.state = ChannelState.ERROR
		self.last_error = exc

	def _deliver(self, frame: dict) -> None:
		if self.state is ChannelState.CLOSED:
			return
		if not self._broadcast_self and frame.get("origin") == self.connection_id:
			return
		self._queue.put_nowait(frame)

	async def _dispatch_loop(self) -> None:
		while self.state is not ChannelState.CLOSED:
			frame = await self._queue.get()
			try:
				await self._dispatch(frame)
			finally:
				self._queue.task_done()

	async def _dispatch(self, frame: dict) -> None:
		event = str(frame.get("event") or "")
		payload = frame.get("payload") or {}
		listeners = list(self._listeners.get(event, ())) + list(self._listeners.get(WILDCARD, ()))
		for listener in listeners:
			try:
				result = listener(event, payload)
				if inspect.isawaitable(result):
					await result
			except asyncio.CancelledError:
				raise
			except Exception:
				logger.exception("channel listener failed", extra={"topic": self.topic, "event": event})


class ChannelRegistry:
	"""Channel handles keyed by connection id, then by topic."""

	def __init__(
		self,
		transport: Optional[Transport] = None,
		*,
		broadcast_self: Optional[bool] = None,
		subscribe_timeout: Optional[float] = None,
	) -> None:
		self.transport = transport or build_transport()
		self._broadcast_self = settings.broadcast_self if broadcast_self is None else broadcast_self
		self._subscribe_timeout = (
			settings.channel_subscribe_timeout_seconds if subscribe_timeout is None else subscribe_timeout
		)
		self._channels: Dict[str, Dict[str, ChannelHandle]] = {}

	def get_or_create(self, connection_id: str, topic: str) -> ChannelHandle:
		# No await between lookup and insert: concurrent callers share one handle.
		try:
			Topic.parse(topic)
		except ValueError as exc:
			raise InvalidInputError(str(exc)) from None
		per_connection = self._channels.setdefault(connection_id, {})
		handle = per_connection.get(topic)
		if handle is None or handle.state is ChannelState.CLOSED:
			if handle is not None:
				obs_metrics.channel_closed()
			handle = ChannelHandle(
				connection_id,
				topic,
				self.transport,
				broadcast_self=self._broadcast_self,
				subscribe_timeout=self._subscribe_timeout,
			)
			per_connection[topic] = handle
			obs_metrics.channel_opened()
		handle.start()
		return handle

	async def publish(self, connection_id: str, topic: str, event: str, payload: dict) -> None:
		"""Publish on ``topic`` without holding a channel for it."""
		try:
			Topic.parse(topic)
		except ValueError as exc:
			raise InvalidInputError(str(exc)) from None
		frame = {"origin": connection_id, "event": event, "payload": payload}
		try:
			await self.transport.publish(topic, frame)
		except Exception as exc:
			obs_metrics.broadcast(event, "error")
			raise ChannelError("broadcast_failed") from exc
		obs_metrics.broadcast(event, "ok")

	def get(self, connection_id: str, topic: str) -> Optional[ChannelHandle]:
		return self._channels.get(connection_id, {}).get(topic)

	async def unsubscribe(self, connection_id: str, topic: str) -> None:
		per_connection = self._channels.get(connection_id)
		if not per_connection:
			return
		handle = per_connection.pop(topic, None)
		if not per_connection:
			self._channels.pop(connection_id, None)
		if handle is None:
			return
		obs_metrics.channel_closed()
		await handle.close()

	async def unsubscribe_all(self, connection_id: str) -> None:
		per_connection = self._channels.pop(connection_id, None) or {}
		for handle in per_connection.values():
			obs_metrics.channel_closed()
			await handle.close()

	def channels(self, connection_id: str) -> List[str]:
		return list(self._channels.get(connection_id, {}))

	def connections(self) -> List[str]:
		return list(self._channels)


_REGISTRY: Optional[ChannelRegistry] = None


def get_registry() -> ChannelRegistry:
	global _REGISTRY
	if _REGISTRY is None:
		_REGISTRY = ChannelRegistry()
	return _REGISTRY


def set_registry(registry: Optional[ChannelRegistry]) -> None:
	global _REGISTRY
	_REGISTRY = registry


__all__ = [
	"ChannelHandle",
	"ChannelRegistry",
	"ChannelState",
	"Listener",
	"WILDCARD",
	"get_registry",
	"set_registry",
]
