"""Shared fixtures: temp database, users, tokens, mocked upstream."""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, List, Optional

# settings are read at import time
os.environ.setdefault("JWT_SECRET", "test-secret")

import httpx
import pytest
import pytest_asyncio

from chat_relay.api.deps import get_http_client_factory
from chat_relay.core import database
from chat_relay.core.config import settings
from chat_relay.core.security import issue_token_pair
from chat_relay.main import app
from chat_relay.models.db import User
from chat_relay.models.user import Principal
from chat_relay.services import relay


def sse_line(content: str) -> bytes:
    return f"data: {json.dumps({'choices': [{'delta': {'content': content}}]})}\n".encode()


def completion(content: str) -> Dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class FakeUpstream:
    """Records upstream requests and answers them from per-model handlers."""

    def __init__(self, handlers: Optional[Dict[str, Callable[[httpx.Request], Any]]] = None):
        self.handlers = handlers or {}
        self.requests: List[httpx.Request] = []
        self.default: Optional[Callable[[httpx.Request], Any]] = None

    @property
    def models(self) -> List[str]:
        return [json.loads(r.content).get("model") for r in self.requests]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        model = None
        if request.content:
            try:
                model = json.loads(request.content).get("model")
            except ValueError:
                model = None
        handler = self.handlers.get(model, self.default)
        if handler is None:
            return httpx.Response(404, json={"error": {"message": f"no handler for {model}"}})
        result = handler(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "UPLOAD_DIR", tmp_path / "uploads")
    database.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.init_db()
    yield
    await relay.drain_background_tasks(timeout=5)
    await database.dispose_engine()


async def create_user(nickname: str = "tester", is_admin: bool = False, **fields) -> User:
    async with database.get_db_session() as session:
        user = User(nickname=nickname, is_admin=is_admin, **fields)
        session.add(user)
        await session.flush()
    return user


@pytest_asyncio.fixture
async def user(db) -> User:
    return await create_user()


@pytest_asyncio.fixture
async def admin(db) -> User:
    return await create_user(nickname="admin", is_admin=True)


@pytest.fixture
def principal(user) -> Principal:
    return Principal(user_id=user.id, nickname=user.nickname)


def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_token_pair(user.id)['accessToken']}"}


@pytest.fixture
def upstream(monkeypatch) -> FakeUpstream:
    monkeypatch.setattr(settings, "LLM_PROVIDER", "openrouter")
    monkeypatch.setattr(settings, "LLM_MODELS", "a,b")
    fake = FakeUpstream()
    app.dependency_overrides[get_http_client_factory] = lambda: fake.client
    yield fake
    app.dependency_overrides.pop(get_http_client_factory, None)


@pytest_asyncio.fixture
async def api(db):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
