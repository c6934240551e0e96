# chat_relay/services/system_config.py
import logging

from sqlalchemy import select

from ..core.config import settings
from ..core.database import get_db_session
from ..models.db import SystemConfig

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_KEY = "system_prompt"


async def get_system_prompt() -> str:
    """Current admin-configured system prompt, or the default one. Never raises."""
    try:
        async with get_db_session() as session:
            value = await session.scalar(
                select(SystemConfig.value).where(SystemConfig.key == SYSTEM_PROMPT_KEY)
            )
    except Exception as e:
        logger.warning(f"Could not read system prompt, using default: {e}")
        return settings.DEFAULT_SYSTEM_PROMPT

    if not value or not value.strip():
        return settings.DEFAULT_SYSTEM_PROMPT
    return value


async def save_system_prompt(value: str) -> None:
    """Upserts the system prompt (last writer wins)."""
    async with get_db_session() as session:
        await session.merge(SystemConfig(key=SYSTEM_PROMPT_KEY, value=value))
    logger.info(f"System prompt updated ({len(value)} chars)")
