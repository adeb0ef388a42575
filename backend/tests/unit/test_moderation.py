import uuid
from datetime import datetime, timezone

import pytest

from belongchat.domain.messaging.errors import InvalidInputError, NotAuthenticatedError, NotFoundError
from belongchat.domain.messaging.models import Message, ReportReason, ReportStatus
from belongchat.domain.messaging.moderation import ModerationService
from belongchat.infra.auth import AuthenticatedUser, static_user


def _service(store, user_id="alice"):
	return ModerationService(
		current_user=static_user(AuthenticatedUser(id=user_id) if user_id else None),
		store=store,
	)


async def _message_from_bob(store) -> Message:
	conversation = await store.get_or_create_direct_conversation("alice", "bob")
	now = datetime.now(timezone.utc)
	return await store.create_message(
		Message(
			id=str(uuid.uuid4()),
			sender_id="bob",
			content="buy cheap watches",
			created_at=now,
			updated_at=now,
			conversation_id=conversation.id,
		)
	)


@pytest.mark.asyncio
async def test_block_is_idempotent_and_listed(store):
	service = _service(store)

	first = await service.block_user("bob")
	second = await service.block_user("bob")
	blocked = await service.blocked_users()

	assert first.blocked_at == second.blocked_at
	assert [block.blocked_id for block in blocked] == ["bob"]
	assert await store.is_blocked("bob", "alice") is True


@pytest.mark.asyncio
async def test_cannot_block_self(store):
	with pytest.raises(InvalidInputError) as excinfo:
		await _service(store).block_user("alice")

	assert excinfo.value.reason == "cannot_block_self"


@pytest.mark.asyncio
async def test_unblock_reports_whether_anything_changed(store):
	service = _service(store)
	await service.block_user("bob")

	assert await service.unblock_user("bob") is True
	assert await service.unblock_user("bob") is False
	assert await service.blocked_users() == []


@pytest.mark.asyncio
async def test_report_message_records_pending_report(store):
	message = await _message_from_bob(store)
	service = _service(store)

	report = await service.report_message(message.id, ReportReason.SPAM, "  looks automated  ")

	assert report.status is ReportStatus.PENDING
	assert report.details == "looks automated"
	assert report.reporter_id == "alice"
	assert [item.id for item in await service.my_reports()] == [report.id]


@pytest.mark.asyncio
async def test_duplicate_report_is_rejected(store):
	message = await _message_from_bob(store)
	service = _service(store)
	await service.report_message(message.id, ReportReason.HARASSMENT)

	with pytest.raises(InvalidInputError) as excinfo:
		await service.report_message(message.id, ReportReason.SPAM)

	assert excinfo.value.reason == "already_reported"


@pytest.mark.asyncio
async def test_report_validation(store):
	message = await _message_from_bob(store)
	service = _service(store)

	with pytest.raises(InvalidInputError) as missing_details:
		await service.report_message(message.id, ReportReason.OTHER, "   ")
	with pytest.raises(InvalidInputError) as too_long:
		await service.report_message(message.id, ReportReason.SPAM, "x" * 2001)
	with pytest.raises(NotFoundError):
		await service.report_message("missing", ReportReason.SPAM)
	with pytest.raises(InvalidInputError) as own:
		await _service(store, "bob").report_message(message.id, ReportReason.SPAM)

	assert missing_details.value.reason == "details_required"
	assert too_long.value.reason == "details_too_long"
	assert own.value.reason == "cannot_report_own_message"


@pytest.mark.asyncio
async def test_moderation_requires_a_user(store):
	with pytest.raises(NotAuthenticatedError):
		await _service(store, None).blocked_users()
