import uuid
from datetime import datetime, timezone

import pytest

from belongchat.api.pagination import decode_cursor, encode_cursor
from belongchat.domain.messaging.aggregator import ConversationAggregator
from belongchat.domain.messaging.cache import MessageCache
from belongchat.domain.messaging.errors import InvalidInputError, PermissionDeniedError
from belongchat.domain.messaging.models import ConversationType, Message, MessageTarget
from belongchat.infra.auth import AuthenticatedUser, static_user


def _message(target: MessageTarget, sender: str, content: str) -> Message:
	now = datetime.now(timezone.utc)
	return Message(
		id=str(uuid.uuid4()),
		sender_id=sender,
		content=content,
		created_at=now,
		updated_at=now,
		conversation_id=target.conversation_id,
		community_id=target.community_id,
	)


def _aggregator(store, user_id="alice", page_size=None):
	cache = MessageCache()
	aggregator = ConversationAggregator(
		current_user=static_user(AuthenticatedUser(id=user_id)),
		cache=cache,
		store=store,
		page_size=page_size,
	)
	return aggregator, cache


async def _seed(store):
	with_bob = await store.get_or_create_direct_conversation("alice", "bob")
	with_carol = await store.get_or_create_direct_conversation("alice", "carol")
	with_dave = await store.get_or_create_direct_conversation("alice", "dave")
	community = MessageTarget.community("k1")
	await store.add_community_member("k1", "alice")
	await store.add_community_member("k1", "erin")

	await store.create_message(_message(with_carol.target, "carol", "oldest"))
	await store.create_message(_message(community, "erin", "community news"))
	await store.create_message(_message(with_bob.target, "alice", "newest"))
	return with_bob, with_carol, with_dave, community


@pytest.mark.asyncio
async def test_summaries_are_sorted_newest_first_with_empty_last(store):
	with_bob, with_carol, with_dave, community = await _seed(store)
	aggregator, _ = _aggregator(store)

	loaded = await aggregator.load()
	page = aggregator.summaries()

	expected = [with_bob.target, community, with_carol.target, with_dave.target]
	assert [summary.target for summary in loaded] == expected
	assert [summary.target for summary in page.items] == expected
	assert page.next_cursor is None
	assert page.items[1].conversation.type is ConversationType.COMMUNITY
	assert page.items[1].conversation.last_message_preview == "community news"
	assert page.items[3].conversation.last_message_at is None


@pytest.mark.asyncio
async def test_cursor_pages_do_not_overlap(store):
	await _seed(store)
	aggregator, _ = _aggregator(store)
	await aggregator.load()

	first = aggregator.summaries(limit=2)
	second = aggregator.summaries(limit=2, cursor=first.next_cursor)

	assert len(first.items) == 2
	assert first.next_cursor is not None
	assert len(second.items) == 2
	assert second.next_cursor is None
	ids = [summary.conversation.id for summary in first.items + second.items]
	assert len(set(ids)) == 4


@pytest.mark.asyncio
async def test_default_page_size_applies(store):
	await _seed(store)
	aggregator, _ = _aggregator(store, page_size=3)
	await aggregator.load()

	page = aggregator.summaries()

	assert len(page.items) == 3
	assert page.next_cursor is not None


@pytest.mark.asyncio
async def test_unread_only_filters_read_conversations(store):
	_, with_carol, _, community = await _seed(store)
	aggregator, _ = _aggregator(store)
	await aggregator.load()

	page = aggregator.summaries(unread_only=True)

	assert {summary.target for summary in page.items} == {with_carol.target, community}
	assert all(summary.unread_count == 1 for summary in page.items)


@pytest.mark.asyncio
async def test_invalid_cursor_is_rejected(store):
	aggregator, _ = _aggregator(store)
	await aggregator.load()

	with pytest.raises(InvalidInputError) as excinfo:
		aggregator.summaries(cursor="not-a-cursor")

	assert excinfo.value.reason == "invalid_cursor"


@pytest.mark.asyncio
async def test_load_keeps_newer_local_last_message(store):
	with_bob, *_ = await _seed(store)
	aggregator, cache = _aggregator(store)
	await aggregator.load()
	live = _message(with_bob.target, "bob", "arrived over the channel")
	cache.insert(live)
	cache.apply_to_summary(live)

	await aggregator.load()

	summary = cache.summary(with_bob.target)
	assert summary.conversation.last_message_preview == "arrived over the channel"
	assert summary.conversation.last_message_at == live.created_at


@pytest.mark.asyncio
async def test_start_direct_conversation_is_idempotent(store):
	aggregator, cache = _aggregator(store)

	first = await aggregator.start_direct_conversation("bob")
	second = await aggregator.start_direct_conversation("bob")
	reverse, _ = _aggregator(store, user_id="bob")
	from_bob = await reverse.start_direct_conversation("alice")

	assert first.id == second.id == from_bob.id
	assert set(first.participant_ids) == {"alice", "bob"}
	assert cache.summary(first.target) is not None


@pytest.mark.asyncio
async def test_start_direct_conversation_rejects_self_and_blank(store):
	aggregator, _ = _aggregator(store)

	with pytest.raises(InvalidInputError) as self_error:
		await aggregator.start_direct_conversation("alice")
	with pytest.raises(InvalidInputError) as blank_error:
		await aggregator.start_direct_conversation("  ")

	assert self_error.value.reason == "cannot_message_self"
	assert blank_error.value.reason == "other_user_required"


@pytest.mark.asyncio
async def test_start_direct_conversation_respects_blocks(store):
	await store.block_user("bob", "alice")
	aggregator, _ = _aggregator(store)

	with pytest.raises(PermissionDeniedError):
		await aggregator.start_direct_conversation("bob")


def test_cursor_round_trip_and_rejects_garbage():
	stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

	assert decode_cursor(encode_cursor(stamp, "c1")) == (stamp, "c1")
	assert decode_cursor(encode_cursor(None, "c2")) == (None, "c2")
	with pytest.raises(ValueError):
		decode_cursor("%%%")
