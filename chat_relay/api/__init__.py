# chat_relay/api/__init__.py
from . import admin, auth, chat

__all__ = ["admin", "auth", "chat"]
