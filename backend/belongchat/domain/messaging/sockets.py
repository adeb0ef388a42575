"""Socket.IO namespace exposing the messaging core to end clients.

One socket connection maps to one messaging connection: the sid is the
connection id used for channel ownership and self-suppression.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

import socketio
from pydantic import ValidationError

from belongchat.infra.auth import AuthenticatedUser, static_user, user_from_socket_auth
from belongchat.obs import logging as obs_logging
from belongchat.obs import metrics as obs_metrics

from .channels import ChannelRegistry
from .client import MessagingClient
from .errors import InvalidInputError, MessagingError, NotAuthenticatedError
from .events import BroadcastEvent
from .models import ConversationType, Message, MessageTarget, TypingIndicator
from .schemas import EditMessageRequest, SendMessageRequest, TypingPayload
from .store import get_store

logger = logging.getLogger(__name__)

NAMESPACE = "/messaging"


def _headers(scope: Mapping[str, Any]) -> Dict[str, str]:
	headers: Dict[str, str] = {}
	for key, value in scope.get("headers", []):
		name = key.decode() if isinstance(key, bytes) else str(key)
		headers[name.lower()] = value.decode() if isinstance(value, bytes) else str(value)
	return headers


def _target(payload: Mapping[str, Any]) -> MessageTarget:
	conversation_id = payload.get("conversationId") or payload.get("conversation_id")
	community_id = payload.get("communityId") or payload.get("community_id")
	return MessageTarget(
		conversation_id=str(conversation_id) if conversation_id else None,
		community_id=str(community_id) if community_id else None,
	)


def _message_id(payload: Mapping[str, Any]) -> str:
	message_id = payload.get("messageId") or payload.get("message_id")
	if not message_id:
		raise InvalidInputError("message_id_required")
	return str(message_id)


class MessagingNamespace(socketio.AsyncNamespace):
	def __init__(self, *, registry: Optional[ChannelRegistry] = None) -> None:
		super().__init__(NAMESPACE)
		self._registry = registry
		self._clients: Dict[str, MessagingClient] = {}
		self._users: Dict[str, AuthenticatedUser] = {}
		self._typing_watch: Dict[str, Set[str]] = {}

	def client_for(self, sid: str) -> Optional[MessagingClient]:
		return self._clients.get(sid)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		scope = environ.get("asgi.scope", environ)
		payload = auth or environ.get("auth") or scope.get("auth") or {}
		try:
			user = user_from_socket_auth(payload, _headers(scope))
		except ValueError as exc:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError(str(exc)) from None
		client = MessagingClient(
			current_user=static_user(user),
			registry=self._registry,
			store=get_store(),
			connection_id=sid,
		)
		client.subscriptions.add_observer(lambda event, message: self._forward_message(sid, event, message))
		self._clients[sid] = client
		self._users[sid] = user
		tokens = obs_logging.bind_context(connection_id=sid, user_id=user.id)
		try:
			await client.start()
			logger.info("messaging client connected")
		except Exception:
			logger.exception("messaging client failed to start")
			await self.on_disconnect(sid)
			raise ConnectionRefusedError("unavailable") from None
		finally:
			obs_logging.reset_context(tokens)
		await self.emit(
			"messaging:ready",
			{
				"connectionId": sid,
				"userId": user.id,
				"unread": {
					"conversations": client.read_state.total_unread(ConversationType.DIRECT),
					"communities": client.read_state.total_unread(ConversationType.COMMUNITY),
				},
			},
			room=sid,
		)

	async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
		self._users.pop(sid, None)
		self._typing_watch.pop(sid, None)
		client = self._clients.pop(sid, None)
		if client is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		await client.close()

	async def on_join(self, sid: str, payload: dict) -> dict:
		async def _join(client: MessagingClient) -> dict:
			target = _target(payload or {})
			messages = await client.open(target)
			watched = self._typing_watch.setdefault(sid, set())
			if target.conversation_id and target.conversation_id not in watched:
				channel = client.typing(target.conversation_id)
				channel.on_change(lambda indicator: self._forward_typing(sid, indicator))
				watched.add(target.conversation_id)
			return {
				"messages": [message.to_dict() for message in messages],
				"unread": client.read_state.unread_count(target),
			}

		return await self._handle(sid, "join", _join)

	async def on_leave(self, sid: str, payload: dict) -> dict:
		async def _leave(client: MessagingClient) -> dict:
			target = _target(payload or {})
			await client.close_target(target)
			if target.conversation_id:
				self._typing_watch.get(sid, set()).discard(target.conversation_id)
			return {}

		return await self._handle(sid, "leave", _leave)

	async def on_send(self, sid: str, payload: dict) -> dict:
		async def _send(client: MessagingClient) -> dict:
			request = SendMessageRequest.model_validate(payload or {})
			message = await client.send(request)
			return {"message": message.to_dict()}

		return await self._handle(sid, "send", _send)

	async def on_edit(self, sid: str, payload: dict) -> dict:
		async def _edit(client: MessagingClient) -> dict:
			data = payload or {}
			request = EditMessageRequest.model_validate(data)
			message = await client.pipeline.edit(_message_id(data), request.content)
			return {"message": message.to_dict()}

		return await self._handle(sid, "edit", _edit)

	async def on_delete(self, sid: str, payload: dict) -> dict:
		async def _delete(client: MessagingClient) -> dict:
			message = await client.pipeline.delete(_message_id(payload or {}))
			return {"messageId": message.id}

		return await self._handle(sid, "delete", _delete)

	async def on_read(self, sid: str, payload: dict) -> dict:
		async def _read(client: MessagingClient) -> dict:
			target = _target(payload or {})
			changed = await client.mark_as_read(target)
			return {"changed": changed, "unread": client.read_state.unread_count(target)}

		return await self._handle(sid, "read", _read)

	async def on_typing(self, sid: str, payload: dict) -> dict:
		async def _typing(client: MessagingClient) -> dict:
			target = _target(payload or {})
			if not target.conversation_id:
				raise InvalidInputError("typing_requires_conversation")
			sent = await client.typing(target.conversation_id).notify_typing()
			return {"sent": sent}

		return await self._handle(sid, "typing", _typing)

	async def on_typing_stop(self, sid: str, payload: dict) -> dict:
		async def _typing_stop(client: MessagingClient) -> dict:
			target = _target(payload or {})
			if not target.conversation_id:
				raise InvalidInputError("typing_requires_conversation")
			sent = await client.typing(target.conversation_id).stop_typing()
			return {"sent": sent}

		return await self._handle(sid, "typing_stop", _typing_stop)

	async def _handle(
		self,
		sid: str,
		event: str,
		handler: Callable[[MessagingClient], Awaitable[dict]],
	) -> dict:
		obs_metrics.socket_event(self.namespace, event)
		client = self._clients.get(sid)
		user = self._users.get(sid)
		if client is None or user is None:
			error = NotAuthenticatedError()
			return {"ok": False, "error": error.reason, "status": error.status_code}
		tokens = obs_logging.bind_context(connection_id=sid, user_id=user.id)
		try:
			result = await handler(client)
		except MessagingError as exc:
			logger.info("messaging event rejected", extra={"event": event, "reason": exc.reason})
			return {"ok": False, "error": exc.reason, "status": exc.status_code}
		except ValidationError:
			return {"ok": False, "error": "invalid_payload", "status": 400}
		finally:
			obs_logging.reset_context(tokens)
		return {"ok": True, **result}

	async def _forward_message(self, sid: str, event: BroadcastEvent, message: Message) -> None:
		name = "message:" + event.kind.value.split(".", 1)[1]
		obs_metrics.socket_event(self.namespace, name)
		await self.emit(name, message.to_dict(), room=sid)

	async def _forward_typing(self, sid: str, indicator: TypingIndicator) -> None:
		obs_metrics.socket_event(self.namespace, "typing:update")
		payload = TypingPayload(
			user_id=indicator.user_id,
			conversation_id=indicator.conversation_id,
			is_typing=indicator.is_typing,
			timestamp=indicator.timestamp,
		).model_dump(by_alias=True, mode="json")
		await self.emit("typing:update", payload, room=sid)


__all__ = ["NAMESPACE", "MessagingNamespace"]
