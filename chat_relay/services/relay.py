# chat_relay/services/relay.py
"""
Chat relay pipeline.

A validated request is sent to the configured models with fallback. In
streaming mode the winning upstream body is split once into two queues:
one is handed to the HTTP response as-is, the other is drained by a
detached task that rebuilds the answer and stores the exchange. In whole
mode the answer is awaited, stored inline and returned.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Coroutine, Optional, Sequence, Set

import httpx

from ..core.config import get_model_list
from ..models.user import Principal
from . import chat_history, system_config
from .answers import accumulate_answer, extract_answer
from .llm import AnswerExtractionFailed, ChatInput, get_provider, request_with_fallback

logger = logging.getLogger(__name__)


class RoomNotFound(Exception):
    pass


# === Detached tasks ===

_background_tasks: Set[asyncio.Task] = set()


def _on_background_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)


def spawn_background(coro: Coroutine, name: str) -> asyncio.Task:
    """Fire-and-forget task: failures are logged, never propagated."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_background_done)
    return task


async def drain_background_tasks(timeout: Optional[float] = None) -> None:
    """Waits for pending background work (shutdown, tests)."""
    while True:
        running = {task for task in _background_tasks if not task.done()}
        if not running:
            return
        _, pending = await asyncio.wait(running, timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} background tasks still running after {timeout}s")
            return


# === Stream splitting ===

class _Closed:
    def __init__(self, error: Optional[BaseException] = None):
        self.error = error


class StreamTee:
    """
    One reader over the upstream body feeding two unbounded queues, so the
    client and the persistence consumer never wait on each other.
    """

    def __init__(self, source: AsyncIterable[bytes], on_close: Optional[Callable[[], Awaitable[None]]] = None):
        self._source = source
        self._on_close = on_close
        self._client_queue: asyncio.Queue = asyncio.Queue()
        self._store_queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "StreamTee":
        if self._task is None:
            self._task = spawn_background(self._forward(), name="relay-stream-forward")
        return self

    async def _forward(self) -> None:
        error: Optional[BaseException] = None
        try:
            async for chunk in self._source:
                if chunk:
                    self._client_queue.put_nowait(chunk)
                    self._store_queue.put_nowait(chunk)
        except Exception as e:
            error = e
            logger.warning(f"Upstream stream broke off: {e}")
        finally:
            self._client_queue.put_nowait(_Closed(error))
            self._store_queue.put_nowait(_Closed(error))
            if self._on_close is not None:
                await self._on_close()

    @staticmethod
    async def _consume(queue: asyncio.Queue, raise_errors: bool) -> AsyncIterator[bytes]:
        while True:
            item = await queue.get()
            if isinstance(item, _Closed):
                if item.error is not None and raise_errors:
                    raise item.error
                return
            yield item

    def client_stream(self) -> AsyncIterator[bytes]:
        # the client just sees the stream end early on upstream failure
        return self._consume(self._client_queue, raise_errors=False)

    def store_stream(self) -> AsyncIterator[bytes]:
        return self._consume(self._store_queue, raise_errors=True)


# === Pipeline ===

@dataclass
class RelayRequest:
    principal: Principal
    prompt: str
    # stored with the exchange
    image_url: Optional[str] = None
    # sent upstream; defaults to image_url (uploads go inline as data: URLs)
    upstream_image_url: Optional[str] = None
    room_id: Optional[str] = None
    request_id: Optional[str] = None
    new_room: bool = False

    @property
    def has_content(self) -> bool:
        return bool(self.prompt.strip()) or bool(self.image_url or self.upstream_image_url)


@dataclass
class RelayStream:
    model: str
    room_id: Optional[str]
    chunks: AsyncIterator[bytes]


@dataclass
class RelayAnswer:
    model: str
    room_id: Optional[str]
    answer: str


async def check_room(req: RelayRequest) -> None:
    if req.room_id and await chat_history.get_room(req.room_id, req.principal.user_id) is None:
        raise RoomNotFound(req.room_id)


async def _open_room(req: RelayRequest) -> Optional[str]:
    """Room for the exchange. A failed room insert leaves the exchange roomless."""
    if req.room_id or not req.new_room:
        return req.room_id
    try:
        room = await chat_history.create_room(req.principal.user_id, chat_history.room_title(req.prompt))
    except Exception as e:
        logger.exception(f"Failed to create room for user {req.principal.user_id}: {e}")
        return None
    return room.id


async def _store(req: RelayRequest, room_id: Optional[str], answer: str) -> None:
    await chat_history.save_exchange(
        user_id=req.principal.user_id,
        question=req.prompt,
        answer=answer,
        room_id=room_id,
        image_url=req.image_url,
        request_id=req.request_id,
    )


async def _store_streamed(req: RelayRequest, room_id: Optional[str], chunks: AsyncIterator[bytes]) -> None:
    try:
        answer = await accumulate_answer(chunks)
        if not answer.strip():
            logger.info(f"Empty streamed answer for user {req.principal.user_id}, nothing stored")
            return
        await _store(req, room_id, answer)
    except Exception as e:
        logger.exception(f"Failed to store streamed exchange for user {req.principal.user_id}: {e}")


def _chat_input(req: RelayRequest, system_prompt: str) -> ChatInput:
    return ChatInput(
        system_prompt=system_prompt,
        prompt=req.prompt,
        image_url=req.upstream_image_url or req.image_url,
    )


async def open_stream(
    req: RelayRequest,
    client: httpx.AsyncClient,
    provider=None,
    models: Optional[Sequence[str]] = None,
) -> RelayStream:
    """
    Starts a streamed exchange. Returns as soon as a model accepted the
    request; persistence continues in the background. Owns ``client``.
    """
    try:
        system_prompt = await system_config.get_system_prompt()
        reply = await request_with_fallback(
            client,
            provider or get_provider(),
            models or get_model_list(),
            _chat_input(req, system_prompt),
            stream=True,
        )
    except BaseException:
        await client.aclose()
        raise

    response = reply.response

    async def close_upstream() -> None:
        await response.aclose()
        await client.aclose()

    try:
        room_id = await _open_room(req)
    except BaseException:
        await close_upstream()
        raise

    tee = StreamTee(response.aiter_bytes(), on_close=close_upstream).start()
    spawn_background(
        _store_streamed(req, room_id, tee.store_stream()),
        name=f"store-exchange-{req.principal.user_id}",
    )
    return RelayStream(model=reply.model, room_id=room_id, chunks=tee.client_stream())


async def ask(
    req: RelayRequest,
    client: httpx.AsyncClient,
    provider=None,
    models: Optional[Sequence[str]] = None,
) -> RelayAnswer:
    """Whole-answer exchange, stored inline. Owns ``client``."""
    try:
        system_prompt = await system_config.get_system_prompt()
        reply = await request_with_fallback(
            client,
            provider or get_provider(),
            models or get_model_list(),
            _chat_input(req, system_prompt),
            stream=False,
        )
    finally:
        await client.aclose()

    answer = extract_answer(reply.payload)
    if not answer.strip():
        raise AnswerExtractionFailed(f"{reply.model} returned no answer text")

    room_id = await _open_room(req)
    try:
        await _store(req, room_id, answer)
    except Exception as e:
        logger.exception(f"Failed to store exchange for user {req.principal.user_id}: {e}")

    return RelayAnswer(model=reply.model, room_id=room_id, answer=answer)
