"""Domain models for conversations, messages and read state."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional, Tuple

from . import topics
from .errors import InvalidInputError

DELETED_PREVIEW = "[Message deleted]"


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


class ConversationType(str, Enum):
	DIRECT = "direct"
	COMMUNITY = "community"


@dataclass(slots=True, frozen=True)
class MessageTarget:
	"""Exactly one of a conversation or a community a message is addressed to."""

	conversation_id: Optional[str] = None
	community_id: Optional[str] = None

	def __post_init__(self) -> None:
		if bool(self.conversation_id) == bool(self.community_id):
			raise InvalidInputError("provide either conversation_id or community_id, not both")

	@classmethod
	def conversation(cls, conversation_id: str) -> "MessageTarget":
		return cls(conversation_id=str(conversation_id))

	@classmethod
	def community(cls, community_id: str) -> "MessageTarget":
		return cls(community_id=str(community_id))

	@property
	def kind(self) -> ConversationType:
		return ConversationType.DIRECT if self.conversation_id else ConversationType.COMMUNITY

	@property
	def id(self) -> str:
		return str(self.conversation_id or self.community_id)

	@property
	def topic(self) -> str:
		if self.conversation_id:
			return topics.conversation_messages(self.conversation_id)
		return topics.community_messages(str(self.community_id))

	def __str__(self) -> str:
		return f"{self.kind.value}:{self.id}"


@dataclass(slots=True)
class Message:
	id: str
	sender_id: str
	content: str
	created_at: datetime
	updated_at: datetime
	conversation_id: Optional[str] = None
	community_id: Optional[str] = None
	is_edited: bool = False
	is_deleted: bool = False
	encryption_version: int = 1
	# Seen on a broadcast but not yet confirmed by an authoritative read.
	provisional: bool = False

	@property
	def target(self) -> MessageTarget:
		return MessageTarget(conversation_id=self.conversation_id, community_id=self.community_id)

	def confirmed(self) -> "Message":
		return replace(self, provisional=False)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"conversation_id": self.conversation_id,
			"community_id": self.community_id,
			"sender_id": self.sender_id,
			"content": self.content,
			"is_edited": self.is_edited,
			"is_deleted": self.is_deleted,
			"encryption_version": self.encryption_version,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
			"provisional": self.provisional,
		}

	@classmethod
	def from_record(cls, row: Mapping[str, object]) -> "Message":
		conversation_id = row.get("conversation_id")
		community_id = row.get("community_id")
		return cls(
			id=str(row["id"]),
			conversation_id=str(conversation_id) if conversation_id else None,
			community_id=str(community_id) if community_id else None,
			sender_id=str(row["sender_id"]),
			content=str(row["content"]),
			is_edited=bool(row.get("is_edited", False)),
			is_deleted=bool(row.get("is_deleted", False)),
			encryption_version=int(row.get("encryption_version") or 1),  # type: ignore[arg-type]
			created_at=row["created_at"],  # type: ignore[arg-type]
			updated_at=row.get("updated_at") or row["created_at"],  # type: ignore[arg-type]
		)


def preview_for(message: Message, length: int) -> str:
	if message.is_deleted:
		return DELETED_PREVIEW
	return message.content[:length]


@dataclass(slots=True)
class Conversation:
	id: str
	type: ConversationType
	created_at: datetime
	updated_at: datetime
	participant_ids: Tuple[str, ...] = ()
	community_id: Optional[str] = None
	last_message_at: Optional[datetime] = None
	last_message_preview: Optional[str] = None
	last_message_sender_id: Optional[str] = None

	@property
	def target(self) -> MessageTarget:
		if self.type is ConversationType.COMMUNITY:
			return MessageTarget.community(str(self.community_id or self.id))
		return MessageTarget.conversation(self.id)

	def counterpart(self, user_id: str) -> Optional[str]:
		for participant in self.participant_ids:
			if participant != user_id:
				return participant
		return None

	def apply_message(self, message: Message, *, preview_length: int) -> bool:
		"""Record ``message`` as the latest one unless something newer is known.

		last_message_at never moves backwards.
		"""
		if self.last_message_at is not None and message.created_at < self.last_message_at:
			return False
		self.last_message_at = message.created_at
		self.last_message_preview = preview_for(message, preview_length)
		self.last_message_sender_id = message.sender_id
		if message.created_at > self.updated_at:
			self.updated_at = message.created_at
		return True

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"type": self.type.value,
			"participant_ids": list(self.participant_ids),
			"community_id": self.community_id,
			"last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
			"last_message_preview": self.last_message_preview,
			"last_message_sender_id": self.last_message_sender_id,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
		}


@dataclass(slots=True)
class ConversationParticipant:
	conversation_id: str
	user_id: str
	joined_at: datetime
	last_read_at: Optional[datetime] = None
	unread_count: int = 0


@dataclass(slots=True)
class ConversationSummary:
	"""A conversation as seen by one viewer."""

	conversation: Conversation
	unread_count: int = 0
	last_read_at: Optional[datetime] = None

	@property
	def target(self) -> MessageTarget:
		return self.conversation.target

	def to_dict(self) -> dict:
		payload = self.conversation.to_dict()
		payload["unread_count"] = self.unread_count
		payload["last_read_at"] = self.last_read_at.isoformat() if self.last_read_at else None
		return payload


@dataclass(slots=True)
class TypingIndicator:
	user_id: str
	conversation_id: str
	is_typing: bool
	timestamp: datetime


class ReportReason(str, Enum):
	SPAM = "spam"
	HARASSMENT = "harassment"
	INAPPROPRIATE = "inappropriate"
	OTHER = "other"


class ReportStatus(str, Enum):
	PENDING = "pending"
	REVIEWED = "reviewed"
	RESOLVED = "resolved"
	REJECTED = "rejected"


@dataclass(slots=True)
class MessageReport:
	id: str
	message_id: str
	reporter_id: str
	reason: ReportReason
	created_at: datetime
	details: Optional[str] = None
	status: ReportStatus = ReportStatus.PENDING

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"message_id": self.message_id,
			"reporter_id": self.reporter_id,
			"reason": self.reason.value,
			"details": self.details,
			"status": self.status.value,
			"created_at": self.created_at.isoformat(),
		}


@dataclass(slots=True)
class BlockedUser:
	blocker_id: str
	blocked_id: str
	blocked_at: datetime


class SendState(str, Enum):
	PENDING = "pending"
	CONFIRMED = "confirmed"
	FAILED = "failed"


@dataclass(slots=True)
class SendResult:
	message_id: str
	target: MessageTarget
	state: SendState = SendState.PENDING
	message: Optional[Message] = None
	error: Optional[BaseException] = field(default=None, repr=False)
