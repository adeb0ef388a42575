import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from belongchat.domain.messaging.channels import ChannelRegistry, set_registry
from belongchat.domain.messaging.store import InMemoryMessageStore, set_store
from belongchat.domain.messaging.transport import InMemoryBroker
from belongchat.infra import postgres
from belongchat.infra.auth import AuthenticatedUser, static_user
from belongchat.main import app
from belongchat.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from belongchat.infra.redis import redis_client, set_redis_client

	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Ensure a consistent test environment.

	API and socket tests authenticate via X-User-Id headers, which are only
	accepted in dev mode.
	"""
	original_env = settings.environment
	original_rewind = settings.rewind_unread_on_delete
	settings.environment = "dev"
	settings.rewind_unread_on_delete = False
	try:
		yield
	finally:
		settings.environment = original_env
		settings.rewind_unread_on_delete = original_rewind


@pytest.fixture
def broker():
	return InMemoryBroker()


@pytest.fixture
def registry(broker):
	return ChannelRegistry(broker, broadcast_self=False, subscribe_timeout=1.0)


@pytest.fixture
def store():
	return InMemoryMessageStore()


@pytest.fixture(autouse=True)
def messaging_backends(registry, store):
	set_registry(registry)
	set_store(store)
	try:
		yield
	finally:
		set_registry(None)
		set_store(None)


@pytest.fixture
def user_provider():
	def _make(user_id):
		return static_user(AuthenticatedUser(id=user_id) if user_id else None)

	return _make


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
