"""Tagged broadcast events for message channels."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from .models import Message, MessageTarget
from .schemas import BroadcastPayload


class EventKind(str, Enum):
	CREATED = "message.created"
	UPDATED = "message.updated"
	DELETED = "message.deleted"


class EventDecodeError(ValueError):
	"""A frame claimed a known event kind but carried an unusable payload."""


@dataclass(slots=True, frozen=True)
class MessagePayload:
	message_id: str
	sender_id: str
	content: str
	sent_at: datetime
	conversation_id: Optional[str] = None
	community_id: Optional[str] = None

	def to_wire(self) -> dict[str, Any]:
		wire: dict[str, Any] = {
			"messageId": self.message_id,
			"senderId": self.sender_id,
			"content": self.content,
			"sentAt": self.sent_at.isoformat(),
		}
		if self.conversation_id:
			wire["conversationId"] = self.conversation_id
		if self.community_id:
			wire["communityId"] = self.community_id
		return wire

	@classmethod
	def from_message(cls, message: Message, *, sent_at: Optional[datetime] = None) -> "MessagePayload":
		return cls(
			message_id=message.id,
			sender_id=message.sender_id,
			content=message.content,
			sent_at=sent_at or message.created_at,
			conversation_id=message.conversation_id,
			community_id=message.community_id,
		)


@dataclass(slots=True, frozen=True)
class MessageCreated:
	payload: MessagePayload
	kind = EventKind.CREATED


@dataclass(slots=True, frozen=True)
class MessageUpdated:
	payload: MessagePayload
	kind = EventKind.UPDATED


@dataclass(slots=True, frozen=True)
class MessageDeleted:
	payload: MessagePayload
	kind = EventKind.DELETED


BroadcastEvent = Union[MessageCreated, MessageUpdated, MessageDeleted]

_VARIANTS = {
	EventKind.CREATED.value: MessageCreated,
	EventKind.UPDATED.value: MessageUpdated,
	EventKind.DELETED.value: MessageDeleted,
}


def parse_event(
	event: str,
	payload: Mapping[str, Any],
	*,
	target: Optional[MessageTarget] = None,
) -> Optional[BroadcastEvent]:
	"""Decode a raw frame into a tagged event.

	Unknown event names return None. When the frame arrived on a target's own
	channel, the target fills in a payload that omits its conversation or
	community id.
	"""
	variant = _VARIANTS.get(event)
	if variant is None:
		return None
	try:
		parsed = BroadcastPayload.model_validate(dict(payload))
	except ValidationError as exc:
		raise EventDecodeError(f"malformed {event} payload") from exc
	sent_at = parsed.sent_at
	if sent_at.tzinfo is None:
		sent_at = sent_at.replace(tzinfo=timezone.utc)
	conversation_id = parsed.conversation_id
	community_id = parsed.community_id
	if not conversation_id and not community_id and target is not None:
		conversation_id = target.conversation_id
		community_id = target.community_id
	if bool(conversation_id) == bool(community_id):
		raise EventDecodeError(f"{event} payload must address exactly one conversation or community")
	return variant(
		MessagePayload(
			message_id=parsed.message_id,
			sender_id=parsed.sender_id,
			content=parsed.content,
			sent_at=sent_at,
			conversation_id=conversation_id,
			community_id=community_id,
		)
	)


def to_message(event: BroadcastEvent) -> Message:
	"""Project an event onto the cached message shape."""
	payload = event.payload
	return Message(
		id=payload.message_id,
		conversation_id=payload.conversation_id,
		community_id=payload.community_id,
		sender_id=payload.sender_id,
		content=payload.content,
		is_edited=isinstance(event, MessageUpdated),
		is_deleted=isinstance(event, MessageDeleted),
		created_at=payload.sent_at,
		updated_at=payload.sent_at,
		provisional=True,
	)
