# chat_relay/services/users.py
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from ..core.config import get_admin_nicknames
from ..core.database import get_db_session
from ..models.db import ChatHistory, ChatRoom, User, utcnow

logger = logging.getLogger(__name__)


async def get_user(user_id: str) -> Optional[User]:
    async with get_db_session() as session:
        return await session.get(User, user_id)


async def list_users() -> List[User]:
    async with get_db_session() as session:
        rows = await session.scalars(select(User).order_by(User.created_at.desc()))
        return list(rows)


async def upsert_kakao_user(kakao_id: str, nickname: str, email: Optional[str]) -> User:
    """Creates or refreshes the user row for a Kakao account."""
    async with get_db_session() as session:
        user = await session.scalar(select(User).where(User.kakao_id == str(kakao_id)))
        if user is None:
            user = User(
                kakao_id=str(kakao_id),
                nickname=nickname,
                email=email,
                is_admin=nickname in get_admin_nicknames(),
            )
            session.add(user)
            logger.info(f"New Kakao user {kakao_id}")
        else:
            user.nickname = nickname
            user.email = email
            user.updated_at = utcnow()
        await session.flush()
    return user


async def ensure_profile(supabase_user: Dict[str, Any]) -> User:
    """
    Returns the profile row for a Supabase user, creating it on first sight.
    When two first requests race, the losing insert re-reads the winner's row.
    """
    user_id = supabase_user["id"]
    existing = await get_user(user_id)
    if existing is not None:
        return existing

    meta = supabase_user.get("user_metadata") or {}
    try:
        async with get_db_session() as session:
            user = User(
                id=user_id,
                email=supabase_user.get("email"),
                nickname=meta.get("full_name") or meta.get("nickname") or "User",
                is_admin=False,
            )
            session.add(user)
            await session.flush()
    except IntegrityError:
        logger.info(f"Profile for {user_id} was created concurrently, reading it back")
        user = await get_user(user_id)
        if user is None:
            raise
        return user

    logger.info(f"Profile missing for {user_id}, created a new one")
    return user


async def update_nickname(user_id: str, nickname: str) -> Optional[User]:
    """Renames the user. Returns None when the user is gone."""
    async with get_db_session() as session:
        user = await session.get(User, user_id)
        if user is None:
            return None
        user.nickname = nickname
        user.updated_at = utcnow()
        await session.flush()
    logger.info(f"User {user_id} changed nickname")
    return user


async def set_refresh_token(user_id: str, token: Optional[str]) -> None:
    async with get_db_session() as session:
        user = await session.get(User, user_id)
        if user is not None:
            user.refresh_token = token


async def delete_user(user_id: str) -> bool:
    """Removes the user with their rooms and history."""
    async with get_db_session() as session:
        user = await session.get(User, user_id)
        if user is None:
            return False
        await session.execute(delete(ChatHistory).where(ChatHistory.user_id == user_id))
        await session.execute(delete(ChatRoom).where(ChatRoom.user_id == user_id))
        await session.delete(user)
    logger.info(f"Deleted user {user_id}")
    return True
