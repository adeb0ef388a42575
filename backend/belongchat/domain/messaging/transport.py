"""Pub/sub transports carrying broadcast frames between connections."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Callable, Dict, List, Optional, Protocol

from belongchat.infra.redis import RedisProxy, redis_client
from belongchat.settings import settings

logger = logging.getLogger(__name__)

FrameSink = Callable[[dict], None]
ErrorSink = Callable[[BaseException], None]


class TransportSubscription(Protocol):
	async def close(self) -> None:
		...


class Transport(Protocol):
	async def subscribe(
		self,
		topic: str,
		sink: FrameSink,
		*,
		on_error: Optional[ErrorSink] = None,
	) -> TransportSubscription:
		...

	async def publish(self, topic: str, frame: dict) -> None:
		...


def _encode(frame: dict) -> str:
	return json.dumps(frame, separators=(",", ":"), default=str)


class _InMemorySubscription:
	def __init__(self, broker: "InMemoryBroker", topic: str, sink: FrameSink) -> None:
		self._broker = broker
		self._topic = topic
		self._sink = sink
		self._closed = False

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self._broker._remove(self._topic, self._sink)


class InMemoryBroker:
	"""Process-local pub/sub used for development and tests.

	Frames are serialised on publish so subscribers never share mutable state
	with the publisher, matching what a network transport does.
	"""

	def __init__(self) -> None:
		self._subscribers: Dict[str, List[FrameSink]] = {}

	async def subscribe(
		self,
		topic: str,
		sink: FrameSink,
		*,
		on_error: Optional[ErrorSink] = None,
	) -> _InMemorySubscription:
		await asyncio.sleep(0)
		self._subscribers.setdefault(topic, []).append(sink)
		return _InMemorySubscription(self, topic, sink)

	async def publish(self, topic: str, frame: dict) -> None:
		data = _encode(frame)
		await asyncio.sleep(0)
		for sink in list(self._subscribers.get(topic, ())):
			sink(json.loads(data))

	def subscriber_count(self, topic: str) -> int:
		return len(self._subscribers.get(topic, ()))

	def _remove(self, topic: str, sink: FrameSink) -> None:
		sinks = self._subscribers.get(topic)
		if not sinks:
			return
		with suppress(ValueError):
			sinks.remove(sink)
		if not sinks:
			self._subscribers.pop(topic, None)


class _RedisSubscription:
	def __init__(self, pubsub, topic: str, task: asyncio.Task) -> None:
		self._pubsub = pubsub
		self._topic = topic
		self._task = task

	async def close(self) -> None:
		self._task.cancel()
		with suppress(asyncio.CancelledError):
			await self._task
		try:
			await self._pubsub.unsubscribe(self._topic)
		finally:
			await self._pubsub.aclose()


class RedisTransport:
	"""Redis pub/sub transport; one PubSub connection per subscription."""

	def __init__(self, client: RedisProxy | None = None, *, poll_timeout: float = 1.0) -> None:
		self._client = client or redis_client
		self._poll_timeout = poll_timeout

	async def subscribe(
		self,
		topic: str,
		sink: FrameSink,
		*,
		on_error: Optional[ErrorSink] = None,
	) -> _RedisSubscription:
		pubsub = self._client.pubsub()
		try:
			await pubsub.subscribe(topic)
		except BaseException:
			await pubsub.aclose()
			raise
		task = asyncio.create_task(self._pump(pubsub, topic, sink, on_error), name=f"redis-pubsub:{topic}")
		return _RedisSubscription(pubsub, topic, task)

	async def publish(self, topic: str, frame: dict) -> None:
		await self._client.publish(topic, _encode(frame))

	async def _pump(self, pubsub, topic: str, sink: FrameSink, on_error: Optional[ErrorSink]) -> None:
		try:
			while True:
				message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
				if message is None or message.get("type") != "message":
					continue
				try:
					frame = json.loads(message["data"])
				except (TypeError, ValueError):
					logger.warning("dropping undecodable frame on topic=%s", topic)
					continue
				sink(frame)
		except asyncio.CancelledError:
			raise
		except Exception as exc:
			logger.exception("redis pubsub reader failed for topic=%s", topic)
			if on_error is not None:
				on_error(exc)


default_broker = InMemoryBroker()


def build_transport() -> Transport:
	if settings.messaging_transport == "redis":
		return RedisTransport()
	return default_broker


__all__ = [
	"FrameSink",
	"InMemoryBroker",
	"RedisTransport",
	"Transport",
	"TransportSubscription",
	"build_transport",
	"default_broker",
]
