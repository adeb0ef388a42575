import pytest

from belongchat.domain.messaging import topics
from belongchat.domain.messaging.cache import MessageCache
from belongchat.domain.messaging.client import MessagingClient
from belongchat.domain.messaging.errors import NotAuthenticatedError, PermissionDeniedError
from belongchat.domain.messaging.models import ConversationType, MessageTarget
from belongchat.domain.messaging.read_state import ReadStateTracker
from belongchat.domain.messaging.schemas import SendMessageRequest
from belongchat.infra.auth import AuthenticatedUser, static_user


class RejectingReadStore:
	def __init__(self, inner) -> None:
		self._inner = inner

	async def mark_conversation_read(self, target, user_id, read_at):
		raise PermissionDeniedError("not_a_participant")

	def __getattr__(self, item):
		return getattr(self._inner, item)


class FakeClock:
	def __init__(self) -> None:
		self.now = 0.0

	def __call__(self) -> float:
		return self.now


async def _bob_with_unread(registry, store, count=1):
	conversation = await store.get_or_create_direct_conversation("alice", "bob")
	target = conversation.target
	alice = MessagingClient(current_user=static_user(AuthenticatedUser(id="alice")), registry=registry, store=store)
	bob = MessagingClient(current_user=static_user(AuthenticatedUser(id="bob")), registry=registry, store=store)
	await bob.start()
	for n in range(count):
		await alice.send(SendMessageRequest(conversation_id=target.id, content=f"message {n}"))
	await registry.get(bob.connection_id, topics.user_conversations("bob")).drain()
	return target, bob


@pytest.mark.asyncio
async def test_mark_as_read_zeroes_and_persists(registry, store):
	target, bob = await _bob_with_unread(registry, store, count=2)
	assert bob.read_state.unread_count(target) == 2

	changed = await bob.mark_as_read(target)

	assert changed is True
	assert bob.read_state.unread_count(target) == 0
	assert bob.cache.last_read_at(target) is not None
	assert bob.cache.summary(target).unread_count == 0
	assert (await store.fetch_unread_counts("bob"))[target] == 0


@pytest.mark.asyncio
async def test_mark_as_read_is_idempotent(registry, store):
	target, bob = await _bob_with_unread(registry, store)
	await bob.mark_as_read(target)
	first_read_at = bob.cache.last_read_at(target)

	changed = await bob.mark_as_read(target)

	assert changed is False
	assert bob.cache.last_read_at(target) == first_read_at
	assert bob.read_state.unread_count(target) == 0


@pytest.mark.asyncio
async def test_mark_as_read_persists_for_unjoined_community(registry, store):
	await store.add_community_member("c1", "alice")
	await store.add_community_member("c1", "bob")
	target = MessageTarget.community("c1")
	alice = MessagingClient(current_user=static_user(AuthenticatedUser(id="alice")), registry=registry, store=store)
	bob = MessagingClient(current_user=static_user(AuthenticatedUser(id="bob")), registry=registry, store=store)
	await bob.start()
	await alice.send(SendMessageRequest(community_id="c1", content="hi"))
	assert bob.read_state.unread_count(target) == 0

	changed = await bob.mark_as_read(target)
	again = await bob.mark_as_read(target)

	assert changed is True
	assert again is False
	assert bob.cache.last_read_at(target) is not None
	assert (await store.fetch_unread_counts("bob"))[target] == 0


@pytest.mark.asyncio
async def test_mark_as_read_rolls_back_when_store_rejects(registry, store):
	target, bob = await _bob_with_unread(registry, store)
	bob.read_state._store = RejectingReadStore(store)

	with pytest.raises(PermissionDeniedError):
		await bob.mark_as_read(target)

	assert bob.read_state.unread_count(target) == 1
	assert bob.cache.last_read_at(target) is None
	assert (await store.fetch_unread_counts("bob"))[target] == 1


@pytest.mark.asyncio
async def test_mark_as_read_requires_a_user(store):
	tracker = ReadStateTracker(current_user=static_user(None), cache=MessageCache(), store=store)
	conversation = await store.get_or_create_direct_conversation("alice", "bob")

	with pytest.raises(NotAuthenticatedError):
		await tracker.mark_as_read(conversation.target)


@pytest.mark.asyncio
async def test_totals_split_by_kind(store):
	cache = MessageCache()
	tracker = ReadStateTracker(current_user=static_user(AuthenticatedUser(id="bob")), cache=cache, store=store)
	cache.set_unread(MessageTarget.conversation("c1"), 3)
	cache.set_unread(MessageTarget.conversation("c2"), 1)
	cache.set_unread(MessageTarget.community("k1"), 2)

	assert tracker.total_unread(ConversationType.DIRECT) == 4
	assert tracker.total_unread(ConversationType.COMMUNITY) == 2
	assert tracker.total_unread() == 6


@pytest.mark.asyncio
async def test_reconcile_waits_out_the_grace_period(store):
	conversation = await store.get_or_create_direct_conversation("alice", "bob")
	target = conversation.target
	cache = MessageCache()
	clock = FakeClock()
	tracker = ReadStateTracker(
		current_user=static_user(AuthenticatedUser(id="alice")),
		cache=cache,
		store=store,
		reconcile_grace_seconds=5.0,
		clock=clock,
	)
	cache.set_unread(target, 3)

	assert await tracker.reconcile(target) is False
	clock.now = 2.0
	assert await tracker.reconcile(target) is False
	assert cache.unread(target) == 3

	clock.now = 6.0
	assert await tracker.reconcile(target) is True
	assert cache.unread(target) == 0


@pytest.mark.asyncio
async def test_reconcile_is_a_noop_when_counts_agree(store):
	conversation = await store.get_or_create_direct_conversation("alice", "bob")
	cache = MessageCache()
	tracker = ReadStateTracker(
		current_user=static_user(AuthenticatedUser(id="alice")),
		cache=cache,
		store=store,
		reconcile_grace_seconds=0.0,
	)

	assert await tracker.reconcile(conversation.target) is False
