"""Messaging domain exports."""

from .channels import ChannelHandle, ChannelRegistry, ChannelState
from .client import MessagingClient
from .errors import (
	ChannelError,
	InvalidInputError,
	MessagingError,
	NotAuthenticatedError,
	NotFoundError,
	PermissionDeniedError,
	SendFailedError,
)
from .models import Conversation, ConversationSummary, Message, MessageTarget, SendResult, SendState
from .store import InMemoryMessageStore, MessageStore, PostgresMessageStore

__all__ = [
	"ChannelError",
	"ChannelHandle",
	"ChannelRegistry",
	"ChannelState",
	"Conversation",
	"ConversationSummary",
	"InMemoryMessageStore",
	"InvalidInputError",
	"Message",
	"MessageStore",
	"MessageTarget",
	"MessagingClient",
	"MessagingError",
	"NotAuthenticatedError",
	"NotFoundError",
	"PermissionDeniedError",
	"PostgresMessageStore",
	"SendFailedError",
	"SendResult",
	"SendState",
]
