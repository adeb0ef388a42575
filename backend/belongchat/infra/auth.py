"""Authentication helpers.

The messaging core never issues sessions; it only consumes the current user
id. HTTP endpoints resolve it from a Bearer JWT (or, in development, from the
``X-User-Id`` header) and socket connections from their auth payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from belongchat.infra import jwt as jwt_helper
from belongchat.settings import settings


@dataclass(slots=True, frozen=True)
class AuthenticatedUser:
	id: str
	session_id: Optional[str] = None
	display_name: Optional[str] = None


# Resolves the user bound to a connection; None once the session is gone.
CurrentUserProvider = Callable[[], Optional[AuthenticatedUser]]


def static_user(user: Optional[AuthenticatedUser]) -> CurrentUserProvider:
	def _provider() -> Optional[AuthenticatedUser]:
		return user

	return _provider


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode an access JWT into an AuthenticatedUser or raise ValueError."""
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		raise ValueError("invalid_token") from None
	session_id = payload.get("sid")
	display_name = payload.get("name")
	return AuthenticatedUser(
		id=str(payload["sub"]).strip(),
		session_id=str(session_id) if session_id is not None else None,
		display_name=str(display_name) if display_name is not None else None,
	)


def user_from_socket_auth(auth: Mapping[str, object] | None, headers: Mapping[str, str]) -> AuthenticatedUser:
	"""Resolve a socket connection's user from its auth payload or headers."""
	payload = auth or {}
	token = payload.get("token")
	if not token:
		header = headers.get("authorization") or ""
		if header.lower().startswith("bearer "):
			token = header.split(" ", 1)[1]
	if token:
		return verify_access_jwt(str(token))
	if settings.is_dev():
		user_id = payload.get("userId") or payload.get("user_id") or headers.get("x-user-id")
		if user_id:
			return AuthenticatedUser(id=str(user_id))
	raise ValueError("missing_token")


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow a plain header. In all other environments a valid
	Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		try:
			return verify_access_jwt(credentials.credentials)
		except ValueError:
			raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None
	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(id=x_user_id)
	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
