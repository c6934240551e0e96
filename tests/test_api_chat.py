from __future__ import annotations

import base64
import json
from datetime import timedelta

import httpx
import pytest

from chat_relay.core.config import settings
from chat_relay.core.security import ACCESS, create_token
from chat_relay.services import chat_history, relay, system_config

from .conftest import auth_headers, completion, sse_line

HI = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n'
THERE = b'data: {"choices":[{"delta":{"content":" there"}}]}\n'
DONE = b"data: [DONE]\n"

PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@pytest.mark.asyncio
async def test_ask_streams_from_fallback_model_and_stores_answer(api, user, upstream) -> None:
    upstream.handlers["a"] = lambda request: httpx.Response(503, json={"error": {"message": "down"}})
    upstream.handlers["b"] = lambda request: httpx.Response(200, content=HI + THERE + DONE)

    response = await api.post("/api/ai/ask", json={"prompt": "hello"}, headers=auth_headers(user))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.content == HI + THERE + DONE
    assert upstream.models == ["a", "b"]

    await relay.drain_background_tasks(timeout=5)
    rows = await chat_history.get_history(user.id)
    assert [(r.question, r.answer) for r in rows] == [("hello", "Hi there")]
    assert rows[0].room_id == response.headers["x-room-id"]


@pytest.mark.asyncio
async def test_missing_token_rejected_before_prompt_lookup(api, upstream, monkeypatch) -> None:
    calls = []

    async def counting_prompt():
        calls.append(1)
        return "sys"

    monkeypatch.setattr(system_config, "get_system_prompt", counting_prompt)

    response = await api.post("/api/ai/ask", json={"prompt": "hello"})

    assert response.status_code == 401
    assert calls == []
    assert upstream.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("header", ["Token abc", "Bearer", "Bearer not-a-jwt"])
async def test_malformed_credentials_rejected(api, upstream, header) -> None:
    response = await api.post("/api/ai/ask", json={"prompt": "hello"}, headers={"Authorization": header})
    assert response.status_code == 401
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_expired_token_rejected_before_prompt_lookup(api, user, upstream, monkeypatch) -> None:
    calls = []

    async def counting_prompt():
        calls.append(1)
        return "sys"

    monkeypatch.setattr(system_config, "get_system_prompt", counting_prompt)
    expired = create_token(user.id, ACCESS, timedelta(seconds=-10))

    response = await api.post(
        "/api/ai/ask", json={"prompt": "hello"}, headers={"Authorization": f"Bearer {expired}"}
    )

    assert response.status_code == 401
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "   \n\t"])
async def test_blank_prompt_without_image_is_bad_request(api, user, upstream, prompt) -> None:
    response = await api.post("/api/ai/ask", json={"prompt": prompt}, headers=auth_headers(user))

    assert response.status_code == 400
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_non_json_body_is_bad_request(api, user, upstream) -> None:
    response = await api.post(
        "/api/ai/ask",
        content=b"prompt=hello",
        headers={**auth_headers(user), "Content-Type": "text/plain"},
    )
    assert response.status_code == 400
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_image_url_alone_is_enough(api, user, upstream) -> None:
    upstream.handlers["a"] = lambda request: httpx.Response(200, json=completion("a cat"))

    response = await api.post(
        "/api/ai/ask",
        json={"prompt": "", "imageUrl": "https://img.test/cat.png", "stream": False},
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    content = json.loads(upstream.requests[0].content)["messages"][1]["content"]
    assert content == [{"type": "image_url", "image_url": {"url": "https://img.test/cat.png"}}]
    rows = await chat_history.get_history(user.id)
    assert rows[0].image_url == "https://img.test/cat.png"


@pytest.mark.asyncio
async def test_non_streaming_answer(api, user, upstream) -> None:
    upstream.handlers["a"] = lambda request: httpx.Response(200, json=completion("whole"))

    response = await api.post(
        "/api/ai/ask", json={"prompt": "hello", "stream": False}, headers=auth_headers(user)
    )

    assert response.status_code == 200
    body = response.json()
    assert body["answer"] == "whole"
    assert body["roomId"]
    assert json.loads(upstream.requests[0].content)["stream"] is False


@pytest.mark.asyncio
async def test_stream_setting_off_by_default(api, user, upstream, monkeypatch) -> None:
    monkeypatch.setattr(settings, "STREAM_RESPONSES", False)
    upstream.handlers["a"] = lambda request: httpx.Response(200, json=completion("whole"))

    response = await api.post("/api/ai/ask", json={"prompt": "hello"}, headers=auth_headers(user))

    assert response.json()["answer"] == "whole"


@pytest.mark.asyncio
async def test_all_models_failing_surfaces_last_error(api, user, upstream) -> None:
    upstream.handlers["a"] = lambda request: httpx.Response(500, json={"error": {"message": "first"}})
    upstream.handlers["b"] = lambda request: httpx.Response(502, json={"error": {"message": "second"}})

    response = await api.post("/api/ai/ask", json={"prompt": "hello"}, headers=auth_headers(user))

    assert response.status_code == 500
    assert response.json()["detail"] == "All models failed: b: HTTP 502 second"
    assert await chat_history.list_rooms(user.id) == []


@pytest.mark.asyncio
async def test_empty_answer_is_server_error(api, user, upstream) -> None:
    upstream.handlers["a"] = lambda request: httpx.Response(200, json={"choices": []})

    response = await api.post(
        "/api/ai/ask", json={"prompt": "hello", "stream": False}, headers=auth_headers(user)
    )

    assert response.status_code == 500
    assert response.json()["detail"] == "AI response contained no answer"


@pytest.mark.asyncio
async def test_unknown_room_is_not_found(api, user, upstream) -> None:
    response = await api.post(
        "/api/ai/ask", json={"prompt": "hello", "roomId": "nope"}, headers=auth_headers(user)
    )

    assert response.status_code == 404
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_follow_up_in_existing_room(api, user, upstream) -> None:
    room = await chat_history.create_room(user.id, "old topic")
    before = (await chat_history.list_rooms(user.id))[0].updated_at
    upstream.handlers["a"] = lambda request: httpx.Response(200, content=sse_line("again") + DONE)

    response = await api.post(
        "/api/ai/ask", json={"prompt": "more", "roomId": room.id}, headers=auth_headers(user)
    )
    assert response.status_code == 200
    assert response.headers["x-room-id"] == room.id

    await relay.drain_background_tasks(timeout=5)
    rooms = await chat_history.list_rooms(user.id)
    assert len(rooms) == 1
    assert rooms[0].updated_at > before


@pytest.mark.asyncio
async def test_multipart_image_upload(api, user, upstream) -> None:
    upstream.handlers["a"] = lambda request: httpx.Response(200, json=completion("a pixel"))

    response = await api.post(
        "/api/ai/ask",
        data={"prompt": "what is this?", "stream": "false"},
        files={"image": ("pixel.png", PNG, "image/png")},
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    parts = json.loads(upstream.requests[0].content)["messages"][1]["content"]
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")

    stored = (await chat_history.get_history(user.id))[0].image_url
    assert stored.startswith("/api/uploads/") and stored.endswith(".png")

    served = await api.get(stored)
    assert served.status_code == 200
    assert served.content == PNG
    assert served.headers["content-type"] == "image/png"


@pytest.mark.asyncio
async def test_multipart_rejects_non_images(api, user, upstream) -> None:
    response = await api.post(
        "/api/ai/ask",
        data={"prompt": "read this"},
        files={"image": ("notes.txt", b"hello", "text/plain")},
        headers=auth_headers(user),
    )

    assert response.status_code == 400
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_upload_route_rejects_odd_names(api) -> None:
    assert (await api.get("/api/uploads/.env")).status_code == 400
    assert (await api.get("/api/uploads/script.sh")).status_code == 400
    assert (await api.get("/api/uploads/missing.png")).status_code == 404


@pytest.mark.asyncio
async def test_history_and_rooms(api, user) -> None:
    room = await chat_history.create_room(user.id, "topic")
    await chat_history.save_exchange(user_id=user.id, question="q1", answer="a1", room_id=room.id)
    await chat_history.save_exchange(user_id=user.id, question="q2", answer="a2", room_id=room.id)
    await chat_history.save_exchange(user_id=user.id, question="q3", answer="a3")

    everything = (await api.get("/api/history", headers=auth_headers(user))).json()
    assert [item["question"] for item in everything] == ["q3", "q2", "q1"]

    in_room = (await api.get(f"/api/history?roomId={room.id}", headers=auth_headers(user))).json()
    assert [item["question"] for item in in_room] == ["q1", "q2"]
    assert in_room[0]["roomId"] == room.id

    rooms = (await api.get("/api/rooms", headers=auth_headers(user))).json()
    assert [r["title"] for r in rooms] == ["topic"]


@pytest.mark.asyncio
async def test_history_requires_auth(api) -> None:
    assert (await api.get("/api/history")).status_code == 401


@pytest.mark.asyncio
async def test_room_insert_failure_still_returns_answer(api, user, upstream, monkeypatch) -> None:
    async def failing_room(user_id, title):
        raise RuntimeError("db write failed")

    monkeypatch.setattr(chat_history, "create_room", failing_room)
    upstream.handlers["a"] = lambda request: httpx.Response(200, json=completion("whole"))

    response = await api.post(
        "/api/ai/ask", json={"prompt": "hello", "stream": False}, headers=auth_headers(user)
    )

    assert response.status_code == 200
    assert response.json() == {"answer": "whole", "roomId": None}


@pytest.mark.asyncio
async def test_stream_response_headers(api, user, upstream) -> None:
    upstream.handlers["a"] = lambda request: httpx.Response(200, content=sse_line("ok") + DONE)

    response = await api.post("/api/ai/ask", json={"prompt": "hello"}, headers=auth_headers(user))

    assert response.headers["connection"] == "keep-alive"
    assert response.headers["x-accel-buffering"] == "no"
