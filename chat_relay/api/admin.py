# chat_relay/api/admin.py
import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from ..core.config import settings
from ..models.chat import ChatExchangeOut
from ..models.user import Principal, PromptIn, PromptOut, UserOut
from ..services import chat_history, system_config, users
from .deps import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


@router.get("/prompt", response_model=PromptOut)
async def read_prompt(admin: Principal = Depends(require_admin)):
    return PromptOut(prompt=await system_config.get_system_prompt())


@router.post("/prompt")
async def write_prompt(body: PromptIn, admin: Principal = Depends(require_admin)):
    await system_config.save_system_prompt(body.prompt)
    logger.info(f"System prompt changed by {admin.user_id}")
    return {"success": True}


@router.get("/users", response_model=List[UserOut])
async def read_users(admin: Principal = Depends(require_admin)):
    return [UserOut.model_validate(user) for user in await users.list_users()]


@router.get("/logs", response_model=List[ChatExchangeOut])
async def read_logs(
    limit: int = Query(settings.ADMIN_LOG_LIMIT, ge=1, le=1000),
    admin: Principal = Depends(require_admin),
):
    logs = []
    for row, nickname in await chat_history.recent_logs(limit):
        item = ChatExchangeOut.model_validate(row)
        item.nickname = nickname
        logs.append(item)
    return logs
