"""Channel topic naming.

Topic strings are part of the wire contract and must stay stable across
client versions.
"""

from __future__ import annotations

from dataclasses import dataclass

_STREAMS = {
	("conversation", "messages"),
	("community", "messages"),
	("user", "conversations"),
	("conversation", "typing"),
}


@dataclass(slots=True, frozen=True)
class Topic:
	scope: str
	subject_id: str
	stream: str

	def __str__(self) -> str:
		return f"{self.scope}:{self.subject_id}:{self.stream}"

	@classmethod
	def parse(cls, value: str) -> "Topic":
		parts = value.split(":")
		if len(parts) != 3 or not parts[1]:
			raise ValueError(f"invalid topic: {value!r}")
		scope, subject_id, stream = parts
		if (scope, stream) not in _STREAMS:
			raise ValueError(f"unknown topic stream: {value!r}")
		return cls(scope=scope, subject_id=subject_id, stream=stream)


def conversation_messages(conversation_id: str) -> str:
	return f"conversation:{conversation_id}:messages"


def community_messages(community_id: str) -> str:
	return f"community:{community_id}:messages"


def user_conversations(user_id: str) -> str:
	return f"user:{user_id}:conversations"


def conversation_typing(conversation_id: str) -> str:
	return f"conversation:{conversation_id}:typing"
