# chat_relay/api/auth.py
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from ..core.config import settings
from ..core.http import HttpClientFactory
from ..core.security import REFRESH, AuthError, decode_token, issue_token_pair
from ..models.user import NicknameIn, Principal, RefreshRequest, TokenPair, UserOut
from ..services import kakao, users
from .deps import get_current_user, get_http_client_factory

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/auth/kakao/callback")
async def kakao_callback(
    code: Optional[str] = Query(None),
    client_factory: HttpClientFactory = Depends(get_http_client_factory),
):
    """
    Kakao OAuth redirect target:
    1. Exchanges the code for a Kakao token.
    2. Loads the Kakao profile and upserts the user.
    3. Issues our token pair and redirects to the frontend with it.
    """
    if not code:
        raise HTTPException(status_code=400, detail="Authorization code is missing")

    try:
        async with client_factory() as client:
            kakao_token = await kakao.exchange_code(code, client)
            kakao_id, nickname, email = await kakao.fetch_profile(kakao_token, client)
    except kakao.KakaoLoginError as e:
        logger.error(f"Kakao login failed: {e}")
        raise HTTPException(status_code=502, detail="Failed to login with Kakao")

    user = await users.upsert_kakao_user(kakao_id, nickname, email)
    tokens = issue_token_pair(user.id)
    await users.set_refresh_token(user.id, tokens["refreshToken"])
    logger.info(f"Kakao login for user {user.id}")

    query = urlencode({"access_token": tokens["accessToken"], "refresh_token": tokens["refreshToken"]})
    return RedirectResponse(f"{settings.FRONTEND_URL}?{query}", status_code=302)


@router.post("/auth/refresh", response_model=TokenPair)
async def refresh_tokens(body: RefreshRequest):
    if not body.refresh_token:
        raise HTTPException(status_code=400, detail="Missing refresh token")

    try:
        user_id = decode_token(body.refresh_token, expected_type=REFRESH)
    except AuthError as e:
        logger.info(f"Refresh rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    user = await users.get_user(user_id)
    if user is None or user.refresh_token != body.refresh_token:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    tokens = issue_token_pair(user.id)
    await users.set_refresh_token(user.id, tokens["refreshToken"])
    return TokenPair(**tokens)


@router.get("/user/me", response_model=UserOut)
async def read_me(principal: Principal = Depends(get_current_user)):
    user = await users.get_user(principal.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return UserOut.model_validate(user)


@router.patch("/user/me", response_model=UserOut)
async def update_me(body: NicknameIn, principal: Principal = Depends(get_current_user)):
    nickname = body.nickname.strip()
    if not nickname:
        raise HTTPException(status_code=400, detail="Nickname cannot be empty")

    user = await users.update_nickname(principal.user_id, nickname)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return UserOut.model_validate(user)


@router.delete("/user/me")
async def delete_me(principal: Principal = Depends(get_current_user)):
    if not await users.delete_user(principal.user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True}
