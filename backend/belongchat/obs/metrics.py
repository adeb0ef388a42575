"""Central registry for Prometheus metrics used by the messaging core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

SOCKET_CLIENTS = Gauge(
	"belongchat_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"belongchat_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

CHANNELS_OPEN = Gauge(
	"belongchat_channels_open",
	"Broadcast channels currently held by the registry",
)

CHANNEL_SUBSCRIBES = Counter(
	"belongchat_channel_subscribes_total",
	"Channel subscribe attempts by outcome",
	["result"],
)

BROADCASTS = Counter(
	"belongchat_broadcasts_total",
	"Broadcast frames published by outcome",
	["event", "result"],
)

INBOUND_EVENTS = Counter(
	"belongchat_inbound_events_total",
	"Broadcast events reconciled into the cache",
	["event", "result"],
)

MESSAGES_SENT = Counter(
	"belongchat_messages_sent_total",
	"Message sends by final state",
	["state"],
)

READ_MARKS = Counter(
	"belongchat_read_marks_total",
	"Mark-as-read operations by outcome",
	["result"],
)

UNREAD_RESYNCS = Counter(
	"belongchat_unread_resyncs_total",
	"Unread counters corrected from the durable store",
)

TYPING_EVENTS = Counter(
	"belongchat_typing_events_total",
	"Typing indicator frames by direction",
	["direction"],
)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def channel_opened() -> None:
	CHANNELS_OPEN.inc()


def channel_closed() -> None:
	CHANNELS_OPEN.dec()


def channel_subscribe(result: str) -> None:
	CHANNEL_SUBSCRIBES.labels(result=result).inc()


def broadcast(event: str, result: str) -> None:
	BROADCASTS.labels(event=event, result=result).inc()


def inbound_event(event: str, result: str) -> None:
	INBOUND_EVENTS.labels(event=event, result=result).inc()


def message_sent(state: str) -> None:
	MESSAGES_SENT.labels(state=state).inc()


def read_marked(result: str) -> None:
	READ_MARKS.labels(result=result).inc()


def unread_resynced() -> None:
	UNREAD_RESYNCS.inc()


def typing_event(direction: str) -> None:
	TYPING_EVENTS.labels(direction=direction).inc()
