# chat_relay/models/chat.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AskRequest(BaseModel):
    """
    Body of POST /api/ai/ask (JSON form).

    Example:
        {
            "prompt": "파이썬 데코레이터 설명해줘",
            "imageUrl": null,
            "roomId": "6f1c...",
            "requestId": "b2a1...",
            "stream": true
        }
    """
    prompt: str = Field(default="", max_length=20000, description="User prompt, may be empty when an image is attached")
    image_url: Optional[str] = Field(None, alias="imageUrl", description="Public URL of an attached image")
    room_id: Optional[str] = Field(None, alias="roomId", description="Existing chat room")
    request_id: Optional[str] = Field(None, alias="requestId", max_length=128, description="Idempotency key")
    stream: Optional[bool] = Field(None, description="Overrides STREAM_RESPONSES")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def has_content(self) -> bool:
        return bool(self.prompt.strip()) or bool(self.image_url)


class AskResponse(BaseModel):
    answer: str
    room_id: Optional[str] = Field(None, alias="roomId")

    model_config = ConfigDict(populate_by_name=True)


class ChatExchangeOut(BaseModel):
    id: int
    user_id: str = Field(..., alias="userId")
    room_id: Optional[str] = Field(None, alias="roomId")
    question: str
    answer: str
    image_url: Optional[str] = Field(None, alias="imageUrl")
    created_at: datetime = Field(..., alias="createdAt")
    nickname: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class ChatRoomOut(BaseModel):
    id: str
    user_id: str = Field(..., alias="userId")
    title: str
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)
