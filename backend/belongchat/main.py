"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from belongchat.api import messaging, ops
from belongchat.api.errors import install_error_handlers
from belongchat.api.middleware_request_id import RequestIdMiddleware
from belongchat.domain.messaging.sockets import MessagingNamespace
from belongchat.infra import postgres
from belongchat.obs import init as obs_init
from belongchat.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	try:
		yield
	finally:
		await postgres.close_pool()


app = FastAPI(title="Belong Messaging", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True. Replace '*' with explicit origins.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)

app.include_router(ops.router)
app.include_router(messaging.router)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
messaging_namespace = MessagingNamespace()
sio.register_namespace(messaging_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
