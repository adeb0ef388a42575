"""Pydantic schemas for the broadcast wire format and the messaging API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import ConversationSummary, MessageTarget, ReportReason


class _CamelModel(BaseModel):
	model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BroadcastPayload(_CamelModel):
	message_id: str = Field(..., alias="messageId", min_length=1)
	sender_id: str = Field(..., alias="senderId", min_length=1)
	content: str = ""
	sent_at: datetime = Field(..., alias="sentAt")
	conversation_id: Optional[str] = Field(default=None, alias="conversationId")
	community_id: Optional[str] = Field(default=None, alias="communityId")


class TypingPayload(_CamelModel):
	user_id: str = Field(..., alias="userId", min_length=1)
	conversation_id: str = Field(..., alias="conversationId", min_length=1)
	is_typing: bool = Field(..., alias="isTyping")
	timestamp: datetime


class SendMessageRequest(_CamelModel):
	"""Send input; target and content rules are enforced by the send pipeline."""

	conversation_id: Optional[str] = Field(default=None, alias="conversationId")
	community_id: Optional[str] = Field(default=None, alias="communityId")
	content: str = ""

	@property
	def target(self) -> MessageTarget:
		return MessageTarget(conversation_id=self.conversation_id, community_id=self.community_id)


class EditMessageRequest(BaseModel):
	content: str


class DirectConversationRequest(BaseModel):
	other_user_id: str = Field(..., min_length=1)


class ReportMessageRequest(BaseModel):
	reason: ReportReason
	details: Optional[str] = Field(default=None, max_length=2000)


class ConversationSummaryResponse(BaseModel):
	id: str
	type: str
	participant_ids: List[str]
	community_id: Optional[str] = None
	last_message_at: Optional[datetime] = None
	last_message_preview: Optional[str] = None
	last_message_sender_id: Optional[str] = None
	unread_count: int = 0
	last_read_at: Optional[datetime] = None

	@classmethod
	def from_summary(cls, summary: ConversationSummary) -> "ConversationSummaryResponse":
		conversation = summary.conversation
		return cls(
			id=conversation.id,
			type=conversation.type.value,
			participant_ids=list(conversation.participant_ids),
			community_id=conversation.community_id,
			last_message_at=conversation.last_message_at,
			last_message_preview=conversation.last_message_preview,
			last_message_sender_id=conversation.last_message_sender_id,
			unread_count=summary.unread_count,
			last_read_at=summary.last_read_at,
		)


class ConversationListResponse(BaseModel):
	items: List[ConversationSummaryResponse]
	next_cursor: Optional[str] = None


class UnreadCountsResponse(BaseModel):
	conversations: dict[str, int]
	communities: dict[str, int]
	total_conversations: int
	total_communities: int
