"""Durable message store.

``PostgresMessageStore`` is the production implementation; it falls back to
an in-process ``InMemoryMessageStore`` when no Postgres pool is available.
Both raise ``PermissionDeniedError`` for policy rejections so callers can
surface them verbatim.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Set, Tuple

import asyncpg
import ulid

from belongchat.infra.postgres import get_pool
from belongchat.settings import settings

from .errors import InvalidInputError, NotFoundError, PermissionDeniedError
from .models import (
	BlockedUser,
	Conversation,
	ConversationSummary,
	ConversationType,
	Message,
	MessageReport,
	MessageTarget,
	ReportReason,
	ReportStatus,
	utcnow,
)


class MessageStore(Protocol):
	async def create_message(self, message: Message) -> Message:
		...

	async def update_message(self, message_id: str, user_id: str, content: str) -> Message:
		...

	async def delete_message(self, message_id: str, user_id: str) -> Message:
		...

	async def get_message(self, message_id: str) -> Optional[Message]:
		...

	async def fetch_messages(
		self,
		target: MessageTarget,
		*,
		limit: int = 50,
		before: Optional[datetime] = None,
	) -> List[Message]:
		...

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		...

	async def get_or_create_direct_conversation(self, user_id: str, other_user_id: str) -> Conversation:
		...

	async def fetch_conversations(self, user_id: str) -> List[ConversationSummary]:
		...

	async def mark_conversation_read(self, target: MessageTarget, user_id: str, read_at: datetime) -> None:
		...

	async def fetch_unread_counts(self, user_id: str) -> Dict[MessageTarget, int]:
		...

	async def add_community_member(self, community_id: str, user_id: str) -> None:
		...

	async def block_user(self, blocker_id: str, blocked_id: str) -> BlockedUser:
		...

	async def unblock_user(self, blocker_id: str, blocked_id: str) -> bool:
		...

	async def list_blocked(self, blocker_id: str) -> List[BlockedUser]:
		...

	async def is_blocked(self, user_a: str, user_b: str) -> bool:
		...

	async def create_report(self, report: MessageReport) -> MessageReport:
		...

	async def list_reports(self, reporter_id: str) -> List[MessageReport]:
		...


def _pair(user_a: str, user_b: str) -> Tuple[str, str]:
	return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


class InMemoryMessageStore:
	"""Fallback store used in tests and local development."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._messages: Dict[str, Message] = {}
		self._conversations: Dict[str, Conversation] = {}
		self._direct_pairs: Dict[Tuple[str, str], str] = {}
		self._community_members: Dict[str, Set[str]] = {}
		self._read_at: Dict[Tuple[MessageTarget, str], datetime] = {}
		self._blocks: Dict[Tuple[str, str], BlockedUser] = {}
		self._reports: Dict[Tuple[str, str], MessageReport] = {}

	def _blocked(self, user_a: str, user_b: str) -> bool:
		return (user_a, user_b) in self._blocks or (user_b, user_a) in self._blocks

	def _check_can_post(self, target: MessageTarget, user_id: str) -> None:
		if target.conversation_id:
			conversation = self._conversations.get(target.conversation_id)
			if conversation is None:
				raise NotFoundError("conversation_not_found")
			if user_id not in conversation.participant_ids:
				raise PermissionDeniedError("not_a_participant")
			other = conversation.counterpart(user_id)
			if other and self._blocked(user_id, other):
				raise PermissionDeniedError("blocked")
			return
		members = self._community_members.get(str(target.community_id))
		if members is not None and user_id not in members:
			raise PermissionDeniedError("not_a_member")

	def _unread(self, target: MessageTarget, user_id: str) -> int:
		read_at = self._read_at.get((target, user_id))
		return sum(
			1
			for message in self._messages.values()
			if message.target == target
			and message.sender_id != user_id
			and not message.is_deleted
			and (read_at is None or message.created_at > read_at)
		)

	def _summary(self, conversation: Conversation, user_id: str) -> ConversationSummary:
		target = conversation.target
		view = replace(conversation)
		for message in sorted(
			(message for message in self._messages.values() if message.target == target),
			key=lambda item: (item.created_at, item.id),
		):
			view.apply_message(message, preview_length=settings.message_preview_length)
		return ConversationSummary(
			conversation=view,
			unread_count=self._unread(target, user_id),
			last_read_at=self._read_at.get((target, user_id)),
		)

	async def create_message(self, message: Message) -> Message:
		async with self._lock:
			existing = self._messages.get(message.id)
			if existing is not None:
				if existing.sender_id != message.sender_id:
					raise InvalidInputError("duplicate_message_id")
				return replace(existing)
			self._check_can_post(message.target, message.sender_id)
			now = utcnow()
			stored = replace(
				message,
				created_at=now,
				updated_at=now,
				is_edited=False,
				is_deleted=False,
				provisional=False,
			)
			self._messages[stored.id] = stored
			if stored.conversation_id:
				conversation = self._conversations[stored.conversation_id]
				conversation.updated_at = now
			return replace(stored)

	async def update_message(self, message_id: str, user_id: str, content: str) -> Message:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is None:
				raise NotFoundError("message_not_found")
			if message.sender_id != user_id:
				raise PermissionDeniedError("not_message_owner")
			if message.is_deleted:
				raise InvalidInputError("message_deleted")
			message.content = content
			message.is_edited = True
			message.updated_at = utcnow()
			return replace(message)

	async def delete_message(self, message_id: str, user_id: str) -> Message:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is None:
				raise NotFoundError("message_not_found")
			if message.sender_id != user_id:
				raise PermissionDeniedError("not_message_owner")
			message.is_deleted = True
			message.updated_at = utcnow()
			return replace(message)

	async def get_message(self, message_id: str) -> Optional[Message]:
		async with self._lock:
			message = self._messages.get(message_id)
			return replace(message) if message is not None else None

	async def fetch_messages(
		self,
		target: MessageTarget,
		*,
		limit: int = 50,
		before: Optional[datetime] = None,
	) -> List[Message]:
		async with self._lock:
			messages = [
				message
				for message in self._messages.values()
				if message.target == target and (before is None or message.created_at < before)
			]
			messages.sort(key=lambda item: (item.created_at, item.id))
			return [replace(message) for message in messages[-limit:]] if limit > 0 else []

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		async with self._lock:
			conversation = self._conversations.get(conversation_id)
			return replace(conversation) if conversation is not None else None

	async def get_or_create_direct_conversation(self, user_id: str, other_user_id: str) -> Conversation:
		if user_id == other_user_id:
			raise InvalidInputError("cannot_message_self")
		async with self._lock:
			if self._blocked(user_id, other_user_id):
				raise PermissionDeniedError("blocked")
			pair = _pair(user_id, other_user_id)
			conversation_id = self._direct_pairs.get(pair)
			if conversation_id is None:
				now = utcnow()
				conversation = Conversation(
					id=str(ulid.new()),
					type=ConversationType.DIRECT,
					created_at=now,
					updated_at=now,
					participant_ids=pair,
				)
				self._conversations[conversation.id] = conversation
				self._direct_pairs[pair] = conversation.id
				conversation_id = conversation.id
			return replace(self._conversations[conversation_id])

	async def fetch_conversations(self, user_id: str) -> List[ConversationSummary]:
		async with self._lock:
			summaries = [
				self._summary(conversation, user_id)
				for conversation in self._conversations.values()
				if user_id in conversation.participant_ids
			]
			for community_id, members in self._community_members.items():
				if user_id not in members:
					continue
				community = Conversation(
					id=community_id,
					type=ConversationType.COMMUNITY,
					created_at=utcnow(),
					updated_at=utcnow(),
					community_id=community_id,
				)
				summaries.append(self._summary(community, user_id))
			return summaries

	async def mark_conversation_read(self, target: MessageTarget, user_id: str, read_at: datetime) -> None:
		async with self._lock:
			if target.conversation_id:
				conversation = self._conversations.get(target.conversation_id)
				if conversation is None:
					raise NotFoundError("conversation_not_found")
				if user_id not in conversation.participant_ids:
					raise PermissionDeniedError("not_a_participant")
			key = (target, user_id)
			current = self._read_at.get(key)
			if current is None or read_at > current:
				self._read_at[key] = read_at

	async def fetch_unread_counts(self, user_id: str) -> Dict[MessageTarget, int]:
		async with self._lock:
			counts: Dict[MessageTarget, int] = {}
			for conversation in self._conversations.values():
				if user_id in conversation.participant_ids:
					counts[conversation.target] = self._unread(conversation.target, user_id)
			for community_id, members in self._community_members.items():
				if user_id in members:
					target = MessageTarget.community(community_id)
					counts[target] = self._unread(target, user_id)
			return counts

	async def add_community_member(self, community_id: str, user_id: str) -> None:
		async with self._lock:
			self._community_members.setdefault(community_id, set()).add(user_id)

	async def block_user(self, blocker_id: str, blocked_id: str) -> BlockedUser:
		if blocker_id == blocked_id:
			raise InvalidInputError("cannot_block_self")
		async with self._lock:
			key = (blocker_id, blocked_id)
			block = self._blocks.get(key)
			if block is None:
				block = BlockedUser(blocker_id=blocker_id, blocked_id=blocked_id, blocked_at=utcnow())
				self._blocks[key] = block
			return replace(block)

	async def unblock_user(self, blocker_id: str, blocked_id: str) -> bool:
		async with self._lock:
			return self._blocks.pop((blocker_id, blocked_id), None) is not None

	async def list_blocked(self, blocker_id: str) -> List[BlockedUser]:
		async with self._lock:
			blocks = [replace(block) for (blocker, _), block in self._blocks.items() if blocker == blocker_id]
			blocks.sort(key=lambda item: item.blocked_at, reverse=True)
			return blocks

	async def is_blocked(self, user_a: str, user_b: str) -> bool:
		async with self._lock:
			return self._blocked(user_a, user_b)

	async def create_report(self, report: MessageReport) -> MessageReport:
		async with self._lock:
			if report.message_id not in self._messages:
				raise NotFoundError("message_not_found")
			key = (report.message_id, report.reporter_id)
			if key in self._reports:
				raise InvalidInputError("already_reported")
			self._reports[key] = report
			return replace(report)

	async def list_reports(self, reporter_id: str) -> List[MessageReport]:
		async with self._lock:
			reports = [replace(report) for report in self._reports.values() if report.reporter_id == reporter_id]
			reports.sort(key=lambda item: item.created_at, reverse=True)
			return reports


_SCHEMA = """
CREATE TABLE IF NOT EXISTS messaging_conversations (
	id TEXT PRIMARY KEY,
	type TEXT NOT NULL,
	user_a TEXT,
	user_b TEXT,
	created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	UNIQUE (user_a, user_b)
);
CREATE TABLE IF NOT EXISTS messaging_messages (
	id TEXT PRIMARY KEY,
	conversation_id TEXT REFERENCES messaging_conversations(id),
	community_id TEXT,
	sender_id TEXT NOT NULL,
	content TEXT NOT NULL,
	is_edited BOOLEAN NOT NULL DEFAULT FALSE,
	is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
	encryption_version INTEGER NOT NULL DEFAULT 1,
	created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	CHECK ((conversation_id IS NULL) <> (community_id IS NULL))
);
CREATE INDEX IF NOT EXISTS idx_messaging_messages_conversation ON messaging_messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messaging_messages_community ON messaging_messages(community_id, created_at);
CREATE TABLE IF NOT EXISTS messaging_read_state (
	target_kind TEXT NOT NULL,
	target_id TEXT NOT NULL,
	user_id TEXT NOT NULL,
	last_read_at TIMESTAMPTZ NOT NULL,
	PRIMARY KEY (target_kind, target_id, user_id)
);
CREATE TABLE IF NOT EXISTS messaging_community_members (
	community_id TEXT NOT NULL,
	user_id TEXT NOT NULL,
	joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	PRIMARY KEY (community_id, user_id)
);
CREATE TABLE IF NOT EXISTS messaging_blocks (
	blocker_id TEXT NOT NULL,
	blocked_id TEXT NOT NULL,
	blocked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	PRIMARY KEY (blocker_id, blocked_id)
);
CREATE TABLE IF NOT EXISTS messaging_reports (
	id TEXT PRIMARY KEY,
	message_id TEXT NOT NULL REFERENCES messaging_messages(id),
	reporter_id TEXT NOT NULL,
	reason TEXT NOT NULL,
	details TEXT,
	status TEXT NOT NULL DEFAULT 'pending',
	created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	UNIQUE (message_id, reporter_id)
);
"""

_MESSAGE_COLUMNS = (
	"id, conversation_id, community_id, sender_id, content, is_edited, is_deleted, "
	"encryption_version, created_at, updated_at"
)

_DIRECT_SUMMARIES_SQL = """
	SELECT c.*, m.content AS last_content, m.sender_id AS last_sender_id, m.created_at AS last_at,
		m.is_deleted AS last_deleted, r.last_read_at,
		(
			SELECT COUNT(*) FROM messaging_messages u
			WHERE u.conversation_id = c.id
				AND u.sender_id <> $1 AND NOT u.is_deleted
				AND (r.last_read_at IS NULL OR u.created_at > r.last_read_at)
		) AS unread_count
	FROM messaging_conversations c
	LEFT JOIN LATERAL (
		SELECT content, sender_id, created_at, is_deleted FROM messaging_messages
		WHERE conversation_id = c.id ORDER BY created_at DESC, id DESC LIMIT 1
	) m ON TRUE
	LEFT JOIN messaging_read_state r
		ON r.target_kind = 'direct' AND r.target_id = c.id AND r.user_id = $1
	WHERE c.type = 'direct' AND (c.user_a = $1 OR c.user_b = $1)
"""

_COMMUNITY_SUMMARIES_SQL = """
	SELECT cm.community_id, cm.joined_at, m.content AS last_content, m.sender_id AS last_sender_id,
		m.created_at AS last_at, m.is_deleted AS last_deleted, r.last_read_at,
		(
			SELECT COUNT(*) FROM messaging_messages u
			WHERE u.community_id = cm.community_id
				AND u.sender_id <> $1 AND NOT u.is_deleted
				AND (r.last_read_at IS NULL OR u.created_at > r.last_read_at)
		) AS unread_count
	FROM messaging_community_members cm
	LEFT JOIN LATERAL (
		SELECT content, sender_id, created_at, is_deleted FROM messaging_messages
		WHERE community_id = cm.community_id ORDER BY created_at DESC, id DESC LIMIT 1
	) m ON TRUE
	LEFT JOIN messaging_read_state r
		ON r.target_kind = 'community' AND r.target_id = cm.community_id AND r.user_id = $1
	WHERE cm.user_id = $1
"""



def _target_key(target: MessageTarget) -> Tuple[str, str]:
	return target.kind.value, target.id


def _report_from_record(row: asyncpg.Record) -> MessageReport:
	return MessageReport(
		id=str(row["id"]),
		message_id=str(row["message_id"]),
		reporter_id=str(row["reporter_id"]),
		reason=ReportReason(row["reason"]),
		details=row["details"],
		status=ReportStatus(row["status"]),
		created_at=row["created_at"],
	)


def _conversation_from_record(row: asyncpg.Record) -> Conversation:
	participants = tuple(str(user) for user in (row["user_a"], row["user_b"]) if user)
	return Conversation(
		id=str(row["id"]),
		type=ConversationType(row["type"]),
		created_at=row["created_at"],
		updated_at=row["updated_at"],
		participant_ids=participants,
	)


def _summary_from_record(conversation: Conversation, row: asyncpg.Record) -> ConversationSummary:
	if row["last_at"] is not None:
		conversation.apply_message(
			Message(
				id="",
				sender_id=str(row["last_sender_id"]),
				content=str(row["last_content"]),
				created_at=row["last_at"],
				updated_at=row["last_at"],
				conversation_id=None if conversation.type is ConversationType.COMMUNITY else conversation.id,
				community_id=conversation.community_id,
				is_deleted=bool(row["last_deleted"]),
			),
			preview_length=settings.message_preview_length,
		)
	return ConversationSummary(
		conversation=conversation,
		unread_count=int(row["unread_count"] or 0),
		last_read_at=row["last_read_at"],
	)


_MEMORY_STORE = InMemoryMessageStore()


class PostgresMessageStore:
	"""Repository backed by asyncpg with an in-memory fallback."""

	def __init__(self, memory: Optional[InMemoryMessageStore] = None) -> None:
		self._memory = memory or _MEMORY_STORE
		self._pool_checked = False
		self._pool: Optional[asyncpg.Pool] = None
		self._schema_ready = False

	async def _pool_or_none(self) -> Optional[asyncpg.Pool]:
		if self._pool_checked:
			return self._pool
		self._pool_checked = True
		try:
			pool = await get_pool()
		except AssertionError:
			pool = None
		except Exception:
			pool = None
		self._pool = pool
		return pool

	async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
		if self._schema_ready:
			return
		await conn.execute(_SCHEMA)
		self._schema_ready = True

	async def _is_blocked(self, conn: asyncpg.Connection, user_a: str, user_b: str) -> bool:
		row = await conn.fetchrow(
			"""
			SELECT 1 FROM messaging_blocks
			WHERE (blocker_id = $1 AND blocked_id = $2) OR (blocker_id = $2 AND blocked_id = $1)
			""",
			user_a,
			user_b,
		)
		return row is not None

	async def _check_can_post(self, conn: asyncpg.Connection, target: MessageTarget, user_id: str) -> None:
		if target.conversation_id:
			row = await conn.fetchrow(
				"SELECT user_a, user_b FROM messaging_conversations WHERE id = $1",
				target.conversation_id,
			)
			if row is None:
				raise NotFoundError("conversation_not_found")
			if user_id not in (row["user_a"], row["user_b"]):
				raise PermissionDeniedError("not_a_participant")
			other = row["user_b"] if row["user_a"] == user_id else row["user_a"]
			if await self._is_blocked(conn, user_id, other):
				raise PermissionDeniedError("blocked")
			return
		row = await conn.fetchrow(
			"""
			SELECT COUNT(*) AS members, BOOL_OR(user_id = $2) AS is_member
			FROM messaging_community_members WHERE community_id = $1
			""",
			target.community_id,
			user_id,
		)
		if row and row["members"] and not row["is_member"]:
			raise PermissionDeniedError("not_a_member")

	async def create_message(self, message: Message) -> Message:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.create_message(message)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			async with conn.transaction():
				existing = await conn.fetchrow(
					f"SELECT {_MESSAGE_COLUMNS} FROM messaging_messages WHERE id = $1",
					message.id,
				)
				if existing is not None:
					if str(existing["sender_id"]) != message.sender_id:
						raise InvalidInputError("duplicate_message_id")
					return Message.from_record(existing)
				await self._check_can_post(conn, message.target, message.sender_id)
				row = await conn.fetchrow(
					f"""
					INSERT INTO messaging_messages (id, conversation_id, community_id, sender_id, content, encryption_version)
					VALUES ($1, $2, $3, $4, $5, $6)
					RETURNING {_MESSAGE_COLUMNS}
					""",
					message.id,
					message.conversation_id,
					message.community_id,
					message.sender_id,
					message.content,
					message.encryption_version,
				)
				if message.conversation_id:
					await conn.execute(
						"UPDATE messaging_conversations SET updated_at = $2 WHERE id = $1",
						message.conversation_id,
						row["created_at"],
					)
				return Message.from_record(row)

	async def update_message(self, message_id: str, user_id: str, content: str) -> Message:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.update_message(message_id, user_id, content)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			async with conn.transaction():
				current = await conn.fetchrow(
					"SELECT sender_id, is_deleted FROM messaging_messages WHERE id = $1 FOR UPDATE",
					message_id,
				)
				if current is None:
					raise NotFoundError("message_not_found")
				if str(current["sender_id"]) != user_id:
					raise PermissionDeniedError("not_message_owner")
				if current["is_deleted"]:
					raise InvalidInputError("message_deleted")
				row = await conn.fetchrow(
					f"""
					UPDATE messaging_messages SET content = $2, is_edited = TRUE, updated_at = NOW()
					WHERE id = $1
					RETURNING {_MESSAGE_COLUMNS}
					""",
					message_id,
					content,
				)
				return Message.from_record(row)

	async def delete_message(self, message_id: str, user_id: str) -> Message:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.delete_message(message_id, user_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			async with conn.transaction():
				current = await conn.fetchrow(
					"SELECT sender_id FROM messaging_messages WHERE id = $1 FOR UPDATE",
					message_id,
				)
				if current is None:
					raise NotFoundError("message_not_found")
				if str(current["sender_id"]) != user_id:
					raise PermissionDeniedError("not_message_owner")
				row = await conn.fetchrow(
					f"""
					UPDATE messaging_messages SET is_deleted = TRUE, updated_at = NOW()
					WHERE id = $1
					RETURNING {_MESSAGE_COLUMNS}
					""",
					message_id,
				)
				return Message.from_record(row)

	async def get_message(self, message_id: str) -> Optional[Message]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.get_message(message_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			row = await conn.fetchrow(f"SELECT {_MESSAGE_COLUMNS} FROM messaging_messages WHERE id = $1", message_id)
			return Message.from_record(row) if row else None

	async def fetch_messages(
		self,
		target: MessageTarget,
		*,
		limit: int = 50,
		before: Optional[datetime] = None,
	) -> List[Message]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.fetch_messages(target, limit=limit, before=before)
		column = "conversation_id" if target.conversation_id else "community_id"
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS} FROM messaging_messages
				WHERE {column} = $1 AND ($2::timestamptz IS NULL OR created_at < $2)
				ORDER BY created_at DESC, id DESC
				LIMIT $3
				""",
				target.id,
				before,
				limit,
			)
		return [Message.from_record(row) for row in reversed(rows)]

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.get_conversation(conversation_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			row = await conn.fetchrow("SELECT * FROM messaging_conversations WHERE id = $1", conversation_id)
			return _conversation_from_record(row) if row else None

	async def get_or_create_direct_conversation(self, user_id: str, other_user_id: str) -> Conversation:
		if user_id == other_user_id:
			raise InvalidInputError("cannot_message_self")
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.get_or_create_direct_conversation(user_id, other_user_id)
		user_a, user_b = _pair(user_id, other_user_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			async with conn.transaction():
				if await self._is_blocked(conn, user_a, user_b):
					raise PermissionDeniedError("blocked")
				await conn.execute(
					"""
					INSERT INTO messaging_conversations (id, type, user_a, user_b)
					VALUES ($1, 'direct', $2, $3)
					ON CONFLICT (user_a, user_b) DO NOTHING
					""",
					str(ulid.new()),
					user_a,
					user_b,
				)
				row = await conn.fetchrow(
					"SELECT * FROM messaging_conversations WHERE user_a = $1 AND user_b = $2",
					user_a,
					user_b,
				)
		return _conversation_from_record(row)

	async def fetch_conversations(self, user_id: str) -> List[ConversationSummary]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.fetch_conversations(user_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			direct_rows = await conn.fetch(_DIRECT_SUMMARIES_SQL, user_id)
			community_rows = await conn.fetch(_COMMUNITY_SUMMARIES_SQL, user_id)
		summaries = [_summary_from_record(_conversation_from_record(row), row) for row in direct_rows]
		for row in community_rows:
			community_id = str(row["community_id"])
			conversation = Conversation(
				id=community_id,
				type=ConversationType.COMMUNITY,
				created_at=row["joined_at"],
				updated_at=row["joined_at"],
				community_id=community_id,
			)
			summaries.append(_summary_from_record(conversation, row))
		return summaries

	async def mark_conversation_read(self, target: MessageTarget, user_id: str, read_at: datetime) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await self._memory.mark_conversation_read(target, user_id, read_at)
			return
		kind, target_id = _target_key(target)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			if target.conversation_id:
				row = await conn.fetchrow(
					"SELECT user_a, user_b FROM messaging_conversations WHERE id = $1",
					target.conversation_id,
				)
				if row is None:
					raise NotFoundError("conversation_not_found")
				if user_id not in (row["user_a"], row["user_b"]):
					raise PermissionDeniedError("not_a_participant")
			await conn.execute(
				"""
				INSERT INTO messaging_read_state (target_kind, target_id, user_id, last_read_at)
				VALUES ($1, $2, $3, $4)
				ON CONFLICT (target_kind, target_id, user_id)
				DO UPDATE SET last_read_at = GREATEST(messaging_read_state.last_read_at, EXCLUDED.last_read_at)
				""",
				kind,
				target_id,
				user_id,
				read_at,
			)

	async def fetch_unread_counts(self, user_id: str) -> Dict[MessageTarget, int]:
		summaries = await self.fetch_conversations(user_id)
		return {summary.target: summary.unread_count for summary in summaries}

	async def add_community_member(self, community_id: str, user_id: str) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await self._memory.add_community_member(community_id, user_id)
			return
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			await conn.execute(
				"""
				INSERT INTO messaging_community_members (community_id, user_id)
				VALUES ($1, $2)
				ON CONFLICT DO NOTHING
				""",
				community_id,
				user_id,
			)

	async def block_user(self, blocker_id: str, blocked_id: str) -> BlockedUser:
		if blocker_id == blocked_id:
			raise InvalidInputError("cannot_block_self")
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.block_user(blocker_id, blocked_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			await conn.execute(
				"""
				INSERT INTO messaging_blocks (blocker_id, blocked_id)
				VALUES ($1, $2)
				ON CONFLICT DO NOTHING
				""",
				blocker_id,
				blocked_id,
			)
			row = await conn.fetchrow(
				"SELECT * FROM messaging_blocks WHERE blocker_id = $1 AND blocked_id = $2",
				blocker_id,
				blocked_id,
			)
		return BlockedUser(blocker_id=str(row["blocker_id"]), blocked_id=str(row["blocked_id"]), blocked_at=row["blocked_at"])

	async def unblock_user(self, blocker_id: str, blocked_id: str) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.unblock_user(blocker_id, blocked_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			result = await conn.execute(
				"DELETE FROM messaging_blocks WHERE blocker_id = $1 AND blocked_id = $2",
				blocker_id,
				blocked_id,
			)
		return result.endswith(" 1")

	async def list_blocked(self, blocker_id: str) -> List[BlockedUser]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.list_blocked(blocker_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			rows = await conn.fetch(
				"SELECT * FROM messaging_blocks WHERE blocker_id = $1 ORDER BY blocked_at DESC",
				blocker_id,
			)
		return [
			BlockedUser(blocker_id=str(row["blocker_id"]), blocked_id=str(row["blocked_id"]), blocked_at=row["blocked_at"])
			for row in rows
		]

	async def is_blocked(self, user_a: str, user_b: str) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.is_blocked(user_a, user_b)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			return await self._is_blocked(conn, user_a, user_b)

	async def create_report(self, report: MessageReport) -> MessageReport:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.create_report(report)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			try:
				row = await conn.fetchrow(
					"""
					INSERT INTO messaging_reports (id, message_id, reporter_id, reason, details, status, created_at)
					VALUES ($1, $2, $3, $4, $5, $6, $7)
					RETURNING *
					""",
					report.id,
					report.message_id,
					report.reporter_id,
					report.reason.value,
					report.details,
					report.status.value,
					report.created_at,
				)
			except asyncpg.UniqueViolationError:  # type: ignore[attr-defined]
				raise InvalidInputError("already_reported") from None
			except asyncpg.ForeignKeyViolationError:  # type: ignore[attr-defined]
				raise NotFoundError("message_not_found") from None
		return _report_from_record(row)

	async def list_reports(self, reporter_id: str) -> List[MessageReport]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.list_reports(reporter_id)
		async with pool.acquire() as conn:
			await self._ensure_schema(conn)
			rows = await conn.fetch(
				"SELECT * FROM messaging_reports WHERE reporter_id = $1 ORDER BY created_at DESC",
				reporter_id,
			)
		return [_report_from_record(row) for row in rows]


_STORE: MessageStore = PostgresMessageStore()


def get_store() -> MessageStore:
	return _STORE


def set_store(store: Optional[MessageStore]) -> None:
	global _STORE
	_STORE = store if store is not None else PostgresMessageStore()


__all__ = [
	"InMemoryMessageStore",
	"MessageStore",
	"PostgresMessageStore",
	"get_store",
	"set_store",
]
