# chat_relay/core/http.py
from typing import Callable, Optional

import httpx

from .config import settings

HttpClientFactory = Callable[[], httpx.AsyncClient]


def build_http_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """New outbound client; the caller owns it and must close it."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout or settings.LLM_TIMEOUT),
        follow_redirects=False,
    )
