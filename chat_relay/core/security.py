# chat_relay/core/security.py
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
import jwt
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import get_allowed_origins, settings

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class AuthError(Exception):
    """Credential missing, malformed or rejected."""


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
        return response


def setup_cors(app: FastAPI):
    """CORS setup for the application"""
    origins = get_allowed_origins()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["X-Room-Id"],
        max_age=86400,
    )

    app.add_middleware(LoggingMiddleware)


# === Bearer tokens ===

def parse_bearer(header: Optional[str]) -> str:
    if not header:
        raise AuthError("Missing Authorization header")
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise AuthError("Malformed Authorization header")
    return token.strip()


def create_token(user_id: str, token_type: str, expires_in: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "type": token_type,
        "iat": now,
        "exp": now + expires_in,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def issue_token_pair(user_id: str) -> Dict[str, str]:
    return {
        "accessToken": create_token(user_id, ACCESS, timedelta(minutes=settings.ACCESS_TOKEN_MINUTES)),
        "refreshToken": create_token(user_id, REFRESH, timedelta(days=settings.REFRESH_TOKEN_DAYS)),
    }


def decode_token(token: str, expected_type: str = ACCESS) -> str:
    """Verifies signature, expiry and token type; returns the user id."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError as e:
        raise AuthError(f"Invalid token: {e}")

    if payload.get("type") != expected_type:
        raise AuthError(f"Expected a {expected_type} token")
    return payload["sub"]


# === Supabase sessions ===

@retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, max=4),
    reraise=True,
)
async def fetch_supabase_user(token: str, client: httpx.AsyncClient) -> Dict[str, Any]:
    """
    Resolves a Supabase access token to its user object (GET /auth/v1/user).
    Transport errors are retried; any non-200 answer is an AuthError.
    """
    if not settings.SUPABASE_URL:
        raise AuthError("Supabase auth is not configured")

    response = await client.get(
        f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1/user",
        headers={"Authorization": f"Bearer {token}", "apikey": settings.SUPABASE_ANON_KEY},
        timeout=settings.AUTH_TIMEOUT,
    )
    if response.status_code != 200:
        logger.info(f"Supabase rejected session token: {response.status_code}")
        raise AuthError("Invalid session")

    user = response.json()
    if not isinstance(user, dict) or not user.get("id"):
        raise AuthError("Invalid session")
    return user
