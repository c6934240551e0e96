# chat_relay/services/__init__.py
from .llm import request_with_fallback, get_provider, UpstreamExhausted, AnswerExtractionFailed
from .answers import extract_answer, iter_deltas, accumulate_answer
from .system_config import get_system_prompt, save_system_prompt
from .chat_history import save_exchange, get_history, list_rooms
from .relay import open_stream, ask, drain_background_tasks

__all__ = [
    "request_with_fallback",
    "get_provider",
    "UpstreamExhausted",
    "AnswerExtractionFailed",
    "extract_answer",
    "iter_deltas",
    "accumulate_answer",
    "get_system_prompt",
    "save_system_prompt",
    "save_exchange",
    "get_history",
    "list_rooms",
    "open_stream",
    "ask",
    "drain_background_tasks"
]
