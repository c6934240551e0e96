# chat_relay/services/llm.py
import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..core.config import settings
from .answers import has_choices

logger = logging.getLogger(__name__)


class UpstreamExhausted(Exception):
    """Every model candidate failed; carries the last failure detail."""

    def __init__(self, last_error: str):
        super().__init__(last_error)
        self.last_error = last_error


class AnswerExtractionFailed(Exception):
    """Upstream answered successfully but without usable text."""


@dataclass
class ChatInput:
    system_prompt: str
    prompt: str
    # public URL or data: URL
    image_url: Optional[str] = None


@dataclass
class UpstreamReply:
    model: str
    response: httpx.Response
    payload: Any = None


def _split_data_url(url: str):
    header, _, data = url.partition(",")
    mime = header[len("data:"):].split(";")[0] or "image/png"
    return mime, data


# === Providers ===

class OpenRouterProvider:
    """OpenAI-compatible chat completions (OpenRouter)."""

    name = "openrouter"

    def __init__(self, base_url: str, api_key: str):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def build_payload(self, model: str, chat: ChatInput, stream: bool) -> Dict[str, Any]:
        if chat.image_url:
            content: Any = [{"type": "image_url", "image_url": {"url": chat.image_url}}]
            if chat.prompt:
                content.insert(0, {"type": "text", "text": chat.prompt})
        else:
            content = chat.prompt

        return {
            "model": model,
            "messages": [
                {"role": "system", "content": chat.system_prompt},
                {"role": "user", "content": content},
            ],
            "temperature": settings.LLM_TEMPERATURE,
            "max_tokens": settings.LLM_MAX_TOKENS,
            "stream": stream,
        }

    def build_request(self, client: httpx.AsyncClient, model: str, chat: ChatInput, stream: bool) -> httpx.Request:
        return client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=self.build_payload(model, chat, stream),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "text/event-stream" if stream else "application/json",
            },
        )

    @property
    def health_url(self) -> str:
        return f"{self.base_url}/models"


class GeminiProvider:
    """Google Generative Language API (generateContent / streamGenerateContent)."""

    name = "gemini"

    def __init__(self, base_url: str, api_key: str):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def build_payload(self, chat: ChatInput) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []
        if chat.prompt:
            parts.append({"text": chat.prompt})
        if chat.image_url:
            if chat.image_url.startswith("data:"):
                mime, data = _split_data_url(chat.image_url)
                parts.append({"inline_data": {"mime_type": mime, "data": data}})
            else:
                mime = mimetypes.guess_type(chat.image_url)[0] or "image/jpeg"
                parts.append({"file_data": {"mime_type": mime, "file_uri": chat.image_url}})

        return {
            "system_instruction": {"parts": [{"text": chat.system_prompt}]},
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": settings.LLM_TEMPERATURE,
                "maxOutputTokens": settings.LLM_MAX_TOKENS,
            },
        }

    def build_request(self, client: httpx.AsyncClient, model: str, chat: ChatInput, stream: bool) -> httpx.Request:
        action = "streamGenerateContent" if stream else "generateContent"
        return client.build_request(
            "POST",
            f"{self.base_url}/models/{model}:{action}",
            params={"alt": "sse"} if stream else None,
            json=self.build_payload(chat),
            headers={"x-goog-api-key": self.api_key},
        )

    @property
    def health_url(self) -> str:
        return f"{self.base_url}/models"


def get_provider(name: Optional[str] = None):
    name = (name or settings.LLM_PROVIDER).lower()
    if name == "openrouter":
        return OpenRouterProvider(settings.OPENROUTER_BASE_URL, settings.LLM_API_KEY.strip())
    if name == "gemini":
        return GeminiProvider(settings.GEMINI_BASE_URL, settings.LLM_API_KEY.strip())
    raise ValueError(f"Unknown LLM provider: {name}")


# === Model fallback ===

def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text[:500]


async def _attempt(client: httpx.AsyncClient, request: httpx.Request, stream: bool) -> httpx.Response:
    response = await client.send(request, stream=stream)
    if stream and not response.is_success:
        # error bodies are small; read them inside the attempt deadline
        try:
            await response.aread()
        finally:
            await response.aclose()
    return response


async def request_with_fallback(
    client: httpx.AsyncClient,
    provider,
    models: Sequence[str],
    chat: ChatInput,
    *,
    stream: bool,
    timeout: Optional[float] = None,
    strict: Optional[bool] = None,
) -> UpstreamReply:
    """
    Tries each model in order until one answers with a 2xx status.

    Attempts are strictly sequential, each bounded by its own deadline.
    With ``strict`` a whole (non-streamed) answer without choices also
    counts as a failure. Raises UpstreamExhausted with the last failure.
    """
    if not models:
        raise ValueError("models must not be empty")
    timeout = timeout if timeout is not None else settings.LLM_TIMEOUT
    strict = settings.STRICT_PAYLOAD_VALIDATION if strict is None else strict

    last_error = ""
    for model in models:
        request = provider.build_request(client, model, chat, stream)
        try:
            response = await asyncio.wait_for(_attempt(client, request, stream), timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            last_error = f"{model}: timed out after {timeout:g}s"
            logger.warning(f"LLM attempt failed, {last_error}")
            continue
        except httpx.HTTPError as e:
            last_error = f"{model}: {e.__class__.__name__}: {e}"
            logger.warning(f"LLM attempt failed, {last_error}")
            continue

        if not response.is_success:
            last_error = f"{model}: HTTP {response.status_code} {_error_detail(response)}"
            logger.warning(f"LLM attempt failed, {last_error}")
            continue

        if stream:
            logger.info(f"Streaming answer from {model}")
            return UpstreamReply(model=model, response=response)

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if strict and not has_choices(payload):
            last_error = f"{model}: response has no choices"
            logger.warning(f"LLM attempt failed, {last_error}")
            continue

        logger.info(f"Answer from {model}")
        return UpstreamReply(model=model, response=response, payload=payload)

    raise UpstreamExhausted(last_error)
