import uuid
from datetime import datetime, timezone

import pytest

from belongchat.domain.messaging.models import Message, MessageTarget

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


async def _store_message(store, target: MessageTarget, sender: str, content: str) -> Message:
	now = datetime.now(timezone.utc)
	return await store.create_message(
		Message(
			id=str(uuid.uuid4()),
			sender_id=sender,
			content=content,
			created_at=now,
			updated_at=now,
			conversation_id=target.conversation_id,
			community_id=target.community_id,
		)
	)


@pytest.mark.asyncio
async def test_health_and_metrics(api_client):
	health = await api_client.get("/health")
	metrics = await api_client.get("/metrics")

	assert health.status_code == 200
	assert health.json()["status"] == "ok"
	assert health.headers["X-Request-Id"]
	assert metrics.status_code == 200
	assert "belongchat_messages_sent_total" in metrics.text


@pytest.mark.asyncio
async def test_request_id_is_echoed(api_client):
	response = await api_client.get("/health", headers={"X-Request-Id": "req-123"})

	assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_messaging_requires_authentication(api_client):
	response = await api_client.get("/messaging/conversations")

	assert response.status_code == 401
	assert response.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_start_direct_conversation(api_client):
	first = await api_client.post("/messaging/conversations/direct", json={"other_user_id": "bob"}, headers=ALICE)
	again = await api_client.post("/messaging/conversations/direct", json={"other_user_id": "alice"}, headers=BOB)
	to_self = await api_client.post("/messaging/conversations/direct", json={"other_user_id": "alice"}, headers=ALICE)

	assert first.status_code == 200
	assert first.json()["type"] == "direct"
	assert sorted(first.json()["participant_ids"]) == ["alice", "bob"]
	assert again.json()["id"] == first.json()["id"]
	assert to_self.status_code == 400
	assert to_self.json()["detail"] == "cannot_message_self"
	assert to_self.json()["request_id"]


@pytest.mark.asyncio
async def test_list_conversations_and_mark_read(api_client, store):
	with_bob = await store.get_or_create_direct_conversation("alice", "bob")
	with_carol = await store.get_or_create_direct_conversation("alice", "carol")
	await _store_message(store, with_carol.target, "carol", "older")
	await _store_message(store, with_bob.target, "bob", "newer")

	listed = await api_client.get("/messaging/conversations", headers=ALICE)
	body = listed.json()
	assert listed.status_code == 200
	assert [item["id"] for item in body["items"]] == [with_bob.id, with_carol.id]
	assert body["items"][0]["last_message_preview"] == "newer"
	assert body["items"][0]["unread_count"] == 1

	read = await api_client.post(f"/messaging/conversations/{with_bob.id}/read", headers=ALICE)
	again = await api_client.post(f"/messaging/conversations/{with_bob.id}/read", headers=ALICE)
	assert read.json() == {"changed": True, "unread_count": 0}
	assert again.json() == {"changed": False, "unread_count": 0}

	unread_only = await api_client.get("/messaging/conversations", params={"unread_only": "true"}, headers=ALICE)
	assert [item["id"] for item in unread_only.json()["items"]] == [with_carol.id]


@pytest.mark.asyncio
async def test_conversation_paging(api_client, store):
	for other in ("bob", "carol", "dave"):
		await store.get_or_create_direct_conversation("alice", other)

	first = await api_client.get("/messaging/conversations", params={"limit": 2}, headers=ALICE)
	cursor = first.json()["next_cursor"]
	second = await api_client.get("/messaging/conversations", params={"limit": 2, "cursor": cursor}, headers=ALICE)
	invalid = await api_client.get("/messaging/conversations", params={"cursor": "garbage"}, headers=ALICE)
	too_big = await api_client.get("/messaging/conversations", params={"limit": 500}, headers=ALICE)

	assert len(first.json()["items"]) == 2
	assert cursor
	assert len(second.json()["items"]) == 1
	assert second.json()["next_cursor"] is None
	assert invalid.status_code == 400
	assert invalid.json()["detail"] == "invalid_cursor"
	assert too_big.status_code == 422


@pytest.mark.asyncio
async def test_mark_read_unknown_conversation(api_client):
	response = await api_client.post("/messaging/conversations/nope/read", headers=ALICE)

	assert response.status_code == 404
	assert response.json()["detail"] == "conversation_not_found"


@pytest.mark.asyncio
async def test_unread_counts_split_by_kind(api_client, store):
	with_bob = await store.get_or_create_direct_conversation("alice", "bob")
	await store.add_community_member("k1", "alice")
	await store.add_community_member("k1", "erin")
	await _store_message(store, with_bob.target, "bob", "one")
	await _store_message(store, with_bob.target, "bob", "two")
	await _store_message(store, MessageTarget.community("k1"), "erin", "hello all")

	response = await api_client.get("/messaging/unread-counts", headers=ALICE)
	community_read = await api_client.post("/messaging/communities/k1/read", headers=ALICE)
	after = await api_client.get("/messaging/unread-counts", headers=ALICE)

	assert response.json() == {
		"conversations": {with_bob.id: 2},
		"communities": {"k1": 1},
		"total_conversations": 2,
		"total_communities": 1,
	}
	assert community_read.json() == {"changed": True, "unread_count": 0}
	assert after.json()["total_communities"] == 0


@pytest.mark.asyncio
async def test_report_message_flow(api_client, store):
	with_bob = await store.get_or_create_direct_conversation("alice", "bob")
	message = await _store_message(store, with_bob.target, "bob", "spam spam spam")

	created = await api_client.post(
		f"/messaging/messages/{message.id}/reports",
		json={"reason": "spam", "details": "repeated ads"},
		headers=ALICE,
	)
	duplicate = await api_client.post(f"/messaging/messages/{message.id}/reports", json={"reason": "spam"}, headers=ALICE)
	own = await api_client.post(f"/messaging/messages/{message.id}/reports", json={"reason": "spam"}, headers=BOB)
	unknown_reason = await api_client.post(
		f"/messaging/messages/{message.id}/reports", json={"reason": "boring"}, headers=ALICE
	)
	mine = await api_client.get("/messaging/reports", headers=ALICE)

	assert created.status_code == 201
	assert created.json()["status"] == "pending"
	assert duplicate.status_code == 400
	assert duplicate.json()["detail"] == "already_reported"
	assert own.json()["detail"] == "cannot_report_own_message"
	assert unknown_reason.status_code == 422
	assert [item["id"] for item in mine.json()["items"]] == [created.json()["id"]]


@pytest.mark.asyncio
async def test_block_and_unblock(api_client):
	blocked = await api_client.post("/messaging/blocks/bob", headers=ALICE)
	listed = await api_client.get("/messaging/blocks", headers=ALICE)
	start = await api_client.post("/messaging/conversations/direct", json={"other_user_id": "alice"}, headers=BOB)
	removed = await api_client.delete("/messaging/blocks/bob", headers=ALICE)
	removed_again = await api_client.delete("/messaging/blocks/bob", headers=ALICE)
	self_block = await api_client.post("/messaging/blocks/alice", headers=ALICE)

	assert blocked.status_code == 200
	assert blocked.json()["blocked_id"] == "bob"
	assert [item["blocked_id"] for item in listed.json()["items"]] == ["bob"]
	assert start.status_code == 403
	assert start.json()["detail"] == "blocked"
	assert removed.json() == {"removed": True}
	assert removed_again.json() == {"removed": False}
	assert self_block.status_code == 400


@pytest.mark.asyncio
async def test_community_read_without_registered_members(api_client, store):
	await _store_message(store, MessageTarget.community("open-k"), "erin", "anyone here?")

	response = await api_client.post("/messaging/communities/open-k/read", headers=ALICE)

	assert response.status_code == 200
	assert response.json() == {"changed": False, "unread_count": 0}
