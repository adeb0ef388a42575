"""Error taxonomy for the messaging core."""

from __future__ import annotations

from typing import Optional


class MessagingError(Exception):
	"""Base error carrying a machine readable reason and an HTTP-ish status."""

	status_code = 400

	def __init__(self, reason: str, *, status_code: Optional[int] = None) -> None:
		super().__init__(reason)
		self.reason = reason
		if status_code is not None:
			self.status_code = status_code


class InvalidInputError(MessagingError):
	"""Rejected before any I/O: bad target, empty content, self-addressed."""

	status_code = 400


class NotAuthenticatedError(MessagingError):
	status_code = 401

	def __init__(self, reason: str = "not_authenticated") -> None:
		super().__init__(reason)


class PermissionDeniedError(MessagingError):
	"""The durable store refused the operation; never retried."""

	status_code = 403


class NotFoundError(MessagingError):
	status_code = 404


class ChannelError(MessagingError):
	"""Transient transport failure; recovered by resubscribing."""

	status_code = 503


class SendFailedError(MessagingError):
	"""The durable write failed after the optimistic broadcast went out."""

	status_code = 502

	def __init__(self, reason: str, *, message_id: str) -> None:
		super().__init__(reason)
		self.message_id = message_id


__all__ = [
	"ChannelError",
	"InvalidInputError",
	"MessagingError",
	"NotAuthenticatedError",
	"NotFoundError",
	"PermissionDeniedError",
	"SendFailedError",
]
