"""User blocking and message reports."""

from __future__ import annotations

import logging
from typing import List, Optional

import ulid

from belongchat.infra.auth import AuthenticatedUser, CurrentUserProvider

from .errors import InvalidInputError, NotAuthenticatedError, NotFoundError
from .models import BlockedUser, MessageReport, ReportReason, utcnow
from .store import MessageStore

logger = logging.getLogger(__name__)

_MAX_DETAILS_LENGTH = 2000


class ModerationService:
	def __init__(self, *, current_user: CurrentUserProvider, store: MessageStore) -> None:
		self._current_user = current_user
		self._store = store

	def _require_user(self) -> AuthenticatedUser:
		user = self._current_user()
		if user is None:
			raise NotAuthenticatedError()
		return user

	async def block_user(self, other_user_id: str) -> BlockedUser:
		user = self._require_user()
		if other_user_id == user.id:
			raise InvalidInputError("cannot_block_self")
		block = await self._store.block_user(user.id, other_user_id)
		logger.info("user blocked", extra={"blocked_id": other_user_id})
		return block

	async def unblock_user(self, other_user_id: str) -> bool:
		user = self._require_user()
		return await self._store.unblock_user(user.id, other_user_id)

	async def blocked_users(self) -> List[BlockedUser]:
		user = self._require_user()
		return await self._store.list_blocked(user.id)

	async def report_message(
		self,
		message_id: str,
		reason: ReportReason,
		details: Optional[str] = None,
	) -> MessageReport:
		user = self._require_user()
		cleaned = (details or "").strip() or None
		if reason is ReportReason.OTHER and not cleaned:
			raise InvalidInputError("details_required")
		if cleaned and len(cleaned) > _MAX_DETAILS_LENGTH:
			raise InvalidInputError("details_too_long")
		message = await self._store.get_message(message_id)
		if message is None:
			raise NotFoundError("message_not_found")
		if message.sender_id == user.id:
			raise InvalidInputError("cannot_report_own_message")
		report = MessageReport(
			id=str(ulid.new()),
			message_id=message_id,
			reporter_id=user.id,
			reason=reason,
			details=cleaned,
			created_at=utcnow(),
		)
		stored = await self._store.create_report(report)
		logger.info("message reported", extra={"message_id": message_id, "reason": reason.value})
		return stored

	async def my_reports(self) -> List[MessageReport]:
		user = self._require_user()
		return await self._store.list_reports(user.id)


__all__ = ["ModerationService"]
