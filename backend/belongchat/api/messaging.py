"""FastAPI endpoints for conversations, read state and moderation."""

from __future__ import annotations

from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query, status

from belongchat.domain.messaging.client import MessagingClient
from belongchat.domain.messaging.errors import NotFoundError
from belongchat.domain.messaging.models import ConversationType, MessageTarget
from belongchat.domain.messaging.schemas import (
	ConversationListResponse,
	ConversationSummaryResponse,
	DirectConversationRequest,
	ReportMessageRequest,
	UnreadCountsResponse,
)
from belongchat.domain.messaging.store import get_store
from belongchat.infra.auth import AuthenticatedUser, get_current_user, static_user

router = APIRouter(prefix="/messaging", tags=["messaging"])


async def get_messaging_client(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> AsyncIterator[MessagingClient]:
	client = MessagingClient(current_user=static_user(auth_user), store=get_store())
	try:
		yield client
	finally:
		await client.close()


async def _mark_read(client: MessagingClient, target: MessageTarget) -> dict:
	await client.aggregator.load()
	# Communities without registered members have no summary but still accept posts.
	if target.kind is ConversationType.DIRECT and client.cache.summary(target) is None:
		raise NotFoundError("conversation_not_found")
	changed = await client.mark_as_read(target)
	return {"changed": changed, "unread_count": client.read_state.unread_count(target)}


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
	unread_only: bool = Query(default=False),
	cursor: Optional[str] = Query(default=None),
	limit: int = Query(default=20, ge=1, le=100),
	client: MessagingClient = Depends(get_messaging_client),
) -> ConversationListResponse:
	await client.aggregator.load()
	page = client.aggregator.summaries(unread_only=unread_only, cursor=cursor, limit=limit)
	return ConversationListResponse(
		items=[ConversationSummaryResponse.from_summary(summary) for summary in page.items],
		next_cursor=page.next_cursor,
	)


@router.post("/conversations/direct")
async def start_direct_conversation(
	payload: DirectConversationRequest,
	client: MessagingClient = Depends(get_messaging_client),
) -> dict:
	conversation = await client.aggregator.start_direct_conversation(payload.other_user_id)
	return conversation.to_dict()


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(
	conversation_id: str,
	client: MessagingClient = Depends(get_messaging_client),
) -> dict:
	return await _mark_read(client, MessageTarget.conversation(conversation_id))


@router.post("/communities/{community_id}/read")
async def mark_community_read(
	community_id: str,
	client: MessagingClient = Depends(get_messaging_client),
) -> dict:
	return await _mark_read(client, MessageTarget.community(community_id))


@router.get("/unread-counts", response_model=UnreadCountsResponse)
async def unread_counts(client: MessagingClient = Depends(get_messaging_client)) -> UnreadCountsResponse:
	await client.aggregator.load()
	counts = client.cache.unread_counts()
	return UnreadCountsResponse(
		conversations={target.id: count for target, count in counts.items() if target.kind is ConversationType.DIRECT},
		communities={target.id: count for target, count in counts.items() if target.kind is ConversationType.COMMUNITY},
		total_conversations=client.read_state.total_unread(ConversationType.DIRECT),
		total_communities=client.read_state.total_unread(ConversationType.COMMUNITY),
	)


@router.post("/messages/{message_id}/reports", status_code=status.HTTP_201_CREATED)
async def report_message(
	message_id: str,
	payload: ReportMessageRequest,
	client: MessagingClient = Depends(get_messaging_client),
) -> dict:
	report = await client.moderation.report_message(message_id, payload.reason, payload.details)
	return report.to_dict()


@router.get("/reports")
async def list_my_reports(client: MessagingClient = Depends(get_messaging_client)) -> dict:
	reports = await client.moderation.my_reports()
	return {"items": [report.to_dict() for report in reports]}


@router.get("/blocks")
async def list_blocks(client: MessagingClient = Depends(get_messaging_client)) -> dict:
	blocks = await client.moderation.blocked_users()
	return {
		"items": [
			{"blocked_id": block.blocked_id, "blocked_at": block.blocked_at.isoformat()}
			for block in blocks
		]
	}


@router.post("/blocks/{user_id}")
async def block_user(user_id: str, client: MessagingClient = Depends(get_messaging_client)) -> dict:
	block = await client.moderation.block_user(user_id)
	return {"blocked_id": block.blocked_id, "blocked_at": block.blocked_at.isoformat()}


@router.delete("/blocks/{user_id}")
async def unblock_user(user_id: str, client: MessagingClient = Depends(get_messaging_client)) -> dict:
	removed = await client.moderation.unblock_user(user_id)
	return {"removed": removed}
