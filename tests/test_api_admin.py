from __future__ import annotations

import pytest

from chat_relay.core import database
from chat_relay.core.config import settings
from chat_relay.services import chat_history, system_config

from .conftest import auth_headers


@pytest.mark.asyncio
async def test_admin_routes_forbidden_for_regular_users(api, user) -> None:
    headers = auth_headers(user)
    assert (await api.get("/api/admin/prompt", headers=headers)).status_code == 403
    assert (await api.post("/api/admin/prompt", json={"prompt": "x"}, headers=headers)).status_code == 403
    assert (await api.get("/api/admin/users", headers=headers)).status_code == 403
    assert (await api.get("/api/admin/logs", headers=headers)).status_code == 403


@pytest.mark.asyncio
async def test_admin_routes_require_auth(api) -> None:
    assert (await api.get("/api/admin/prompt")).status_code == 401


@pytest.mark.asyncio
async def test_prompt_defaults_then_saves(api, admin) -> None:
    headers = auth_headers(admin)

    first = await api.get("/api/admin/prompt", headers=headers)
    assert first.json() == {"prompt": settings.DEFAULT_SYSTEM_PROMPT}

    saved = await api.post("/api/admin/prompt", json={"prompt": "be brief"}, headers=headers)
    assert saved.json() == {"success": True}
    # upsert: saving twice keeps one row, last writer wins
    await api.post("/api/admin/prompt", json={"prompt": "be very brief"}, headers=headers)

    assert (await api.get("/api/admin/prompt", headers=headers)).json() == {"prompt": "be very brief"}
    assert await system_config.get_system_prompt() == "be very brief"


@pytest.mark.asyncio
async def test_users_and_logs(api, admin, user) -> None:
    await chat_history.save_exchange(user_id=user.id, question="q1", answer="a1")
    await chat_history.save_exchange(user_id=admin.id, question="q2", answer="a2")
    headers = auth_headers(admin)

    listed = (await api.get("/api/admin/users", headers=headers)).json()
    assert {u["nickname"] for u in listed} == {"admin", "tester"}

    logs = (await api.get("/api/admin/logs?limit=10", headers=headers)).json()
    assert [(log["question"], log["nickname"]) for log in logs] == [("q2", "admin"), ("q1", "tester")]


@pytest.mark.asyncio
async def test_system_prompt_read_failure_falls_back_to_default(db, tmp_path) -> None:
    await system_config.save_system_prompt("custom")
    # a database without tables makes every read fail
    await database.dispose_engine()
    database.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")

    assert await system_config.get_system_prompt() == settings.DEFAULT_SYSTEM_PROMPT


@pytest.mark.asyncio
async def test_blank_system_prompt_uses_default(db) -> None:
    await system_config.save_system_prompt("   ")
    assert await system_config.get_system_prompt() == settings.DEFAULT_SYSTEM_PROMPT
