# chat_relay/models/user.py
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, resolved once per request."""
    user_id: str
    is_admin: bool = False
    nickname: str = "User"


class UserOut(BaseModel):
    id: str
    nickname: str
    email: Optional[str] = None
    is_admin: bool = Field(False, alias="isAdmin")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class TokenPair(BaseModel):
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")

    model_config = ConfigDict(populate_by_name=True)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(None, alias="refreshToken")

    model_config = ConfigDict(populate_by_name=True)


class PromptIn(BaseModel):
    prompt: str = Field(..., max_length=20000)


class PromptOut(BaseModel):
    prompt: str


class NicknameIn(BaseModel):
    nickname: str = Field(..., max_length=50)
