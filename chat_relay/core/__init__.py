# chat_relay/core/__init__.py
from .config import settings, get_allowed_origins, get_model_list
from .database import get_db_session, init_db
from .security import setup_cors

__all__ = [
    "settings",
    "get_allowed_origins",
    "get_model_list",
    "get_db_session",
    "init_db",
    "setup_cors"
]
