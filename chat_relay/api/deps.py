# chat_relay/api/deps.py
import logging

import httpx
from fastapi import Depends, HTTPException, Request

from ..core.config import settings
from ..core.http import HttpClientFactory, build_http_client
from ..core.security import AuthError, decode_token, fetch_supabase_user, parse_bearer
from ..models.user import Principal
from ..services import users

logger = logging.getLogger(__name__)


def get_http_client_factory() -> HttpClientFactory:
    """Outbound client factory; overridden in tests with a mock transport."""
    return build_http_client


async def get_current_user(
    request: Request,
    client_factory: HttpClientFactory = Depends(get_http_client_factory),
) -> Principal:
    """Resolves the bearer credential to a principal or fails with 401."""
    try:
        token = parse_bearer(request.headers.get("Authorization"))
        if settings.AUTH_MODE == "supabase":
            async with client_factory() as client:
                user = await users.ensure_profile(await fetch_supabase_user(token, client))
        else:
            user = await users.get_user(decode_token(token))
            if user is None:
                raise AuthError("Unknown user")
    except AuthError as e:
        logger.info(f"Rejected credentials on {request.url.path}: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})
    except httpx.HTTPError as e:
        logger.warning(f"Session lookup failed: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})

    return Principal(user_id=user.id, is_admin=bool(user.is_admin), nickname=user.nickname)


async def require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return principal
