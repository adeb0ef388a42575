import asyncio

import pytest

from belongchat.domain.messaging import topics
from belongchat.domain.messaging.errors import NotAuthenticatedError
from belongchat.domain.messaging.typing_indicator import TypingIndicatorChannel
from belongchat.infra.auth import AuthenticatedUser, static_user

TOPIC = topics.conversation_typing("c1")


def _channel(registry, user_id, *, send_interval=10.0, idle_timeout=10.0, expiry=10.0):
	return TypingIndicatorChannel(
		connection_id=f"conn-{user_id}",
		conversation_id="c1",
		current_user=static_user(AuthenticatedUser(id=user_id) if user_id else None),
		registry=registry,
		send_interval=send_interval,
		idle_timeout=idle_timeout,
		expiry=expiry,
	)


async def _ready(registry, *connection_ids):
	for connection_id in connection_ids:
		await registry.get(connection_id, TOPIC).wait_subscribed()


async def _drain(registry, connection_id):
	await registry.get(connection_id, TOPIC).drain()


@pytest.mark.asyncio
async def test_remote_typing_expires_without_refresh(registry):
	alice = _channel(registry, "alice")
	bob = _channel(registry, "bob", expiry=0.05)
	await _ready(registry, "conn-alice", "conn-bob")
	changes: list = []
	bob.on_change(lambda indicator: changes.append((indicator.user_id, indicator.is_typing)))

	assert await alice.notify_typing() is True
	await _drain(registry, "conn-bob")
	assert bob.typing_users() == frozenset({"alice"})

	await asyncio.sleep(0.1)

	assert bob.typing_users() == frozenset()
	assert changes == [("alice", True), ("alice", False)]
	await alice.close()
	await bob.close()


@pytest.mark.asyncio
async def test_notify_typing_is_debounced(registry):
	alice = _channel(registry, "alice", send_interval=10.0)
	bob = _channel(registry, "bob")
	await _ready(registry, "conn-alice", "conn-bob")
	changes: list = []
	bob.on_change(lambda indicator: changes.append(indicator.is_typing))

	sent = [await alice.notify_typing() for _ in range(3)]
	await _drain(registry, "conn-bob")

	assert sent == [True, False, False]
	assert changes == [True]
	await alice.close()
	await bob.close()


@pytest.mark.asyncio
async def test_idle_typing_stops_automatically(registry):
	alice = _channel(registry, "alice", idle_timeout=0.05)
	bob = _channel(registry, "bob")
	await _ready(registry, "conn-alice", "conn-bob")
	changes: list = []
	bob.on_change(lambda indicator: changes.append(indicator.is_typing))

	await alice.notify_typing()
	await asyncio.sleep(0.1)
	await _drain(registry, "conn-bob")

	assert changes == [True, False]
	assert bob.typing_users() == frozenset()
	await alice.close()
	await bob.close()


@pytest.mark.asyncio
async def test_explicit_stop_clears_remote_indicator(registry):
	alice = _channel(registry, "alice")
	bob = _channel(registry, "bob")
	await _ready(registry, "conn-alice", "conn-bob")

	await alice.notify_typing()
	await _drain(registry, "conn-bob")
	assert "alice" in bob.typing_users()

	assert await alice.stop_typing() is True
	assert await alice.stop_typing() is False
	await _drain(registry, "conn-bob")

	assert bob.typing_users() == frozenset()
	await alice.close()
	await bob.close()


@pytest.mark.asyncio
async def test_local_user_is_never_listed(registry):
	alice = _channel(registry, "alice")
	other_tab = TypingIndicatorChannel(
		connection_id="conn-alice-2",
		conversation_id="c1",
		current_user=static_user(AuthenticatedUser(id="alice")),
		registry=registry,
	)
	await _ready(registry, "conn-alice", "conn-alice-2")

	await alice.notify_typing()
	await _drain(registry, "conn-alice-2")

	assert other_tab.typing_users() == frozenset()
	await alice.close()
	await other_tab.close()


@pytest.mark.asyncio
async def test_malformed_typing_frames_are_dropped(registry):
	bob = _channel(registry, "bob")
	peer = registry.get_or_create("conn-peer", TOPIC)
	await _ready(registry, "conn-bob", "conn-peer")

	await peer.send("typing", {"userId": "carol"})
	await _drain(registry, "conn-bob")

	assert bob.typing_users() == frozenset()
	await bob.close()


@pytest.mark.asyncio
async def test_notify_typing_requires_a_user(registry):
	anonymous = _channel(registry, None)

	with pytest.raises(NotAuthenticatedError):
		await anonymous.notify_typing()
	await anonymous.close()


@pytest.mark.asyncio
async def test_close_releases_the_channel(registry, broker):
	alice = _channel(registry, "alice")
	await _ready(registry, "conn-alice")

	await alice.close()

	assert registry.get("conn-alice", TOPIC) is None
	assert broker.subscriber_count(TOPIC) == 0
	assert await alice.notify_typing() is False
