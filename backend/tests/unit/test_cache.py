from dataclasses import replace
from datetime import datetime, timedelta, timezone

from belongchat.domain.messaging.cache import MessageCache
from belongchat.domain.messaging.models import Message, MessageTarget

TARGET = MessageTarget.conversation("c1")
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _message(message_id, *, at=T0, provisional=False, deleted=False, sender="bob"):
	return Message(
		id=message_id,
		sender_id=sender,
		content=f"content {message_id}",
		created_at=at,
		updated_at=at,
		conversation_id="c1",
		is_deleted=deleted,
		provisional=provisional,
	)


def test_merge_keeps_young_provisional_entries():
	cache = MessageCache()
	cache.insert(_message("live", at=T0 + timedelta(seconds=10), provisional=True))

	merged = cache.merge_authoritative(TARGET, [_message("m1")], grace_seconds=30)

	assert [message.id for message in merged] == ["m1", "live"]
	assert merged[0].provisional is False
	assert merged[1].provisional is True


def test_merge_drops_stale_provisional_entries():
	cache = MessageCache()
	cache.insert(_message("ghost", provisional=True))

	merged = cache.merge_authoritative(TARGET, [_message("m1")], grace_seconds=0)

	assert [message.id for message in merged] == ["m1"]
	assert not cache.has_message("ghost")


def test_merge_confirms_known_provisional_and_skips_deleted():
	cache = MessageCache()
	cache.insert(_message("m1", provisional=True))

	merged = cache.merge_authoritative(
		TARGET,
		[replace(_message("m1"), content="stored"), _message("gone", deleted=True)],
	)

	assert [(message.id, message.content, message.provisional) for message in merged] == [("m1", "stored", False)]


def test_merge_respects_tombstones():
	cache = MessageCache()
	cache.insert(_message("m1"))
	cache.remove("m1", tombstone=True)

	merged = cache.merge_authoritative(TARGET, [_message("m1")])

	assert merged == []
	assert cache.insert(_message("m1")) is False


def test_summary_never_moves_backwards():
	cache = MessageCache(preview_length=5)
	cache.apply_to_summary(_message("new", at=T0 + timedelta(minutes=1)))

	assert cache.apply_to_summary(_message("old", at=T0)) is False

	conversation = cache.summary(TARGET).conversation
	assert conversation.last_message_at == T0 + timedelta(minutes=1)
	assert conversation.last_message_preview == "conte"


def test_unread_is_counted_once_per_message():
	cache = MessageCache()

	assert cache.count_unread(TARGET, "m1") is True
	assert cache.count_unread(TARGET, "m1") is False
	assert cache.unread(TARGET) == 1

	pending = cache.reset_unread(TARGET)
	assert pending == ["m1"]
	assert cache.uncount_unread(TARGET, "m1") is False

	cache.restore_unread(TARGET, 1, pending)
	assert cache.uncount_unread(TARGET, "m1") is True
	assert cache.unread(TARGET) == 0


def test_id_history_evicts_oldest_first():
	cache = MessageCache(id_history=2)
	for message_id in ("m1", "m2", "m3"):
		cache.insert(_message(message_id))
		cache.remove(message_id, tombstone=True)
		cache.count_unread(TARGET, f"u-{message_id}")

	assert not cache.is_tombstoned("m1")
	assert cache.is_tombstoned("m2")
	assert cache.is_tombstoned("m3")
	assert cache.count_unread(TARGET, "u-m1") is True
	assert cache.count_unread(TARGET, "u-m3") is False
