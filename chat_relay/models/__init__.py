# chat_relay/models/__init__.py
from .chat import AskRequest, AskResponse, ChatExchangeOut, ChatRoomOut
from .user import Principal, UserOut, TokenPair, RefreshRequest, PromptIn, PromptOut, NicknameIn

__all__ = [
    "AskRequest",
    "AskResponse",
    "ChatExchangeOut",
    "ChatRoomOut",
    "Principal",
    "UserOut",
    "TokenPair",
    "RefreshRequest",
    "PromptIn",
    "PromptOut",
    "NicknameIn"
]
