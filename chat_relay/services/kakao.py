# chat_relay/services/kakao.py
import logging
from typing import Any, Dict, Optional, Tuple

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import settings

logger = logging.getLogger(__name__)


class KakaoLoginError(Exception):
    pass


async def exchange_code(code: str, client: httpx.AsyncClient) -> str:
    """Trades an authorization code for a Kakao access token (single use, no retry)."""
    try:
        response = await client.post(
            f"{settings.KAKAO_AUTH_URL}/oauth/token",
            data={
                "grant_type": "authorization_code",
                "client_id": settings.KAKAO_CLIENT_ID,
                "client_secret": settings.KAKAO_CLIENT_SECRET,
                "redirect_uri": settings.KAKAO_REDIRECT_URI,
                "code": code,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded;charset=utf-8"},
            timeout=settings.AUTH_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise KakaoLoginError(f"Cannot reach Kakao: {e}")

    if response.status_code != 200:
        raise KakaoLoginError(f"Kakao token exchange failed: {response.status_code} {response.text[:200]}")
    token = response.json().get("access_token")
    if not token:
        raise KakaoLoginError("Kakao returned no access_token")
    return token


@retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, max=4),
    reraise=True,
)
async def _get_profile(access_token: str, client: httpx.AsyncClient) -> httpx.Response:
    return await client.get(
        f"{settings.KAKAO_API_URL}/v2/user/me",
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=settings.AUTH_TIMEOUT,
    )


async def fetch_profile(access_token: str, client: httpx.AsyncClient) -> Tuple[str, str, Optional[str]]:
    """Returns (kakao_id, nickname, email) of the token owner."""
    try:
        response = await _get_profile(access_token, client)
    except httpx.HTTPError as e:
        raise KakaoLoginError(f"Cannot reach Kakao: {e}")

    if response.status_code != 200:
        raise KakaoLoginError(f"Kakao profile request failed: {response.status_code}")

    data: Dict[str, Any] = response.json()
    if data.get("id") is None:
        raise KakaoLoginError("Kakao profile has no id")

    account = data.get("kakao_account") or {}
    profile = account.get("profile") or {}
    return str(data["id"]), profile.get("nickname") or "User", account.get("email")
