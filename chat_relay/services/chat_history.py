# chat_relay/services/chat_history.py
import logging
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..core.config import settings
from ..core.database import get_db_session
from ..models.db import ChatHistory, ChatRoom, User, utcnow

logger = logging.getLogger(__name__)

IMAGE_MARKER = "![Image]({url})"


def compose_question(prompt: str, image_url: Optional[str]) -> Tuple[str, Optional[str]]:
    """Returns (question, image_url column value) for storage."""
    if image_url and settings.IMAGE_MARKER_IN_QUESTION:
        marker = IMAGE_MARKER.format(url=image_url)
        return (f"{marker}\n{prompt}" if prompt else marker), None
    return prompt, image_url


def room_title(prompt: str) -> str:
    title = " ".join(prompt.split())[: settings.ROOM_TITLE_LENGTH]
    return title or "Image"


async def save_exchange(
    user_id: str,
    question: str,
    answer: str,
    room_id: Optional[str] = None,
    image_url: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[int]:
    """
    Stores one completed exchange and bumps the room's updated_at.
    Returns the new row id, or None when request_id was already stored.
    """
    question, image_column = compose_question(question, image_url)
    try:
        async with get_db_session() as session:
            if request_id:
                existing = await session.scalar(
                    select(ChatHistory.id).where(ChatHistory.request_id == request_id)
                )
                if existing is not None:
                    logger.info(f"Exchange for request {request_id} already stored, skipping")
                    return None

            row = ChatHistory(
                user_id=user_id,
                room_id=room_id,
                question=question,
                answer=answer,
                image_url=image_column,
                request_id=request_id,
            )
            session.add(row)
            if room_id:
                await session.execute(
                    update(ChatRoom).where(ChatRoom.id == room_id).values(updated_at=utcnow())
                )
            await session.flush()
            row_id = row.id
    except IntegrityError:
        if request_id:
            logger.info(f"Concurrent duplicate for request {request_id}, skipping")
            return None
        raise

    logger.debug(f"Stored exchange {row_id} for user {user_id}")
    return row_id


async def create_room(user_id: str, title: str) -> ChatRoom:
    async with get_db_session() as session:
        room = ChatRoom(user_id=user_id, title=title)
        session.add(room)
        await session.flush()
    logger.info(f"Created room {room.id} for user {user_id}")
    return room


async def get_room(room_id: str, user_id: str) -> Optional[ChatRoom]:
    async with get_db_session() as session:
        return await session.scalar(
            select(ChatRoom).where(ChatRoom.id == room_id, ChatRoom.user_id == user_id)
        )


async def list_rooms(user_id: str) -> List[ChatRoom]:
    async with get_db_session() as session:
        rows = await session.scalars(
            select(ChatRoom).where(ChatRoom.user_id == user_id).order_by(ChatRoom.updated_at.desc())
        )
        return list(rows)


async def get_history(user_id: str, room_id: Optional[str] = None, limit: int = 50) -> List[ChatHistory]:
    """User's exchanges; newest first, or oldest first within a room."""
    query = select(ChatHistory).where(ChatHistory.user_id == user_id)
    if room_id:
        query = query.where(ChatHistory.room_id == room_id).order_by(
            ChatHistory.created_at.asc(), ChatHistory.id.asc()
        )
    else:
        query = query.order_by(ChatHistory.created_at.desc(), ChatHistory.id.desc())

    async with get_db_session() as session:
        rows = await session.scalars(query.limit(limit))
        return list(rows)


async def recent_logs(limit: int = 100) -> List[Tuple[ChatHistory, Optional[str]]]:
    """Latest exchanges of all users with the author's nickname."""
    async with get_db_session() as session:
        result = await session.execute(
            select(ChatHistory, User.nickname)
            .outerjoin(User, User.id == ChatHistory.user_id)
            .order_by(ChatHistory.created_at.desc(), ChatHistory.id.desc())
            .limit(limit)
        )
        return [(row[0], row[1]) for row in result.all()]
