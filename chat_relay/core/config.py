# chat_relay/core/config.py
from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import List, Optional
from pathlib import Path
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings.
    Every value can be overridden with an environment variable or a .env file.
    """

    # --- LLM provider ---
    LLM_PROVIDER: str = "openrouter"  # openrouter | gemini
    LLM_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    LLM_MODELS: str = (
        "google/gemini-2.0-flash-exp:free,"
        "meta-llama/llama-3.3-70b-instruct:free,"
        "mistralai/mistral-7b-instruct:free"
    )
    LLM_TIMEOUT: float = 30.0  # per attempt, seconds
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 2048
    STRICT_PAYLOAD_VALIDATION: bool = False
    STREAM_RESPONSES: bool = True
    DEFAULT_SYSTEM_PROMPT: str = "너는 한국어로 코드 전문가야"

    # --- Auth ---
    AUTH_MODE: str = "jwt"  # jwt | supabase
    JWT_SECRET: str  # required, no default
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_MINUTES: int = 15
    REFRESH_TOKEN_DAYS: int = 7
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""
    AUTH_TIMEOUT: float = 10.0

    # --- Kakao OAuth ---
    KAKAO_CLIENT_ID: str = ""
    KAKAO_CLIENT_SECRET: str = ""
    KAKAO_REDIRECT_URI: str = "http://localhost:8000/api/auth/kakao/callback"
    KAKAO_AUTH_URL: str = "https://kauth.kakao.com"
    KAKAO_API_URL: str = "https://kapi.kakao.com"
    FRONTEND_URL: str = "http://localhost:5173/"
    ADMIN_NICKNAMES: str = ""

    # --- CORS ---
    ALLOWED_ORIGINS: str = "*"

    # --- Database ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/chat_relay.db"

    # --- Server ---
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # --- Chat ---
    AUTO_CREATE_ROOMS: bool = True
    ROOM_TITLE_LENGTH: int = 40
    IMAGE_MARKER_IN_QUESTION: bool = False
    HISTORY_LIMIT: int = 50
    ADMIN_LOG_LIMIT: int = 100

    # --- Uploads ---
    DATA_DIR: Path = Path("./data")
    UPLOAD_DIR: Path = Path("./data/uploads")
    MAX_UPLOAD_BYTES: int = 5 * 1024 * 1024

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL cannot be empty")
        return v

    @field_validator("JWT_SECRET", mode="before")
    @classmethod
    def validate_jwt_secret(cls, v):
        if not v:
            raise ValueError("JWT_SECRET cannot be empty")
        return v

    @field_validator("LLM_PROVIDER", "AUTH_MODE", mode="before")
    @classmethod
    def normalize_choice(cls, v):
        return str(v).strip().lower()

    @field_validator("LLM_MODELS", mode="before")
    @classmethod
    def validate_models(cls, v):
        if isinstance(v, str) and not [m for m in v.split(",") if m.strip()]:
            raise ValueError("LLM_MODELS must name at least one model")
        return v

    @field_validator("UPLOAD_DIR", "DATA_DIR", mode="before")
    @classmethod
    def create_dirs(cls, v):
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        return path

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def validate_origins(cls, v):
        if isinstance(v, str):
            origins = [origin.strip() for origin in v.split(",") if origin.strip()]
            if not origins:
                raise ValueError("ALLOWED_ORIGINS cannot be empty")
            if "*" in origins:
                logger.warning("ALLOWED_ORIGINS='*' allows every origin")
        return v


# --- Single settings instance ---
settings = Settings()


# --- Helpers ---
def get_allowed_origins() -> List[str]:
    """Returns the list of allowed CORS origins."""
    raw = settings.ALLOWED_ORIGINS
    if raw == "*":
        return ["*"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def get_model_list(raw: Optional[str] = None) -> List[str]:
    """Ordered, de-duplicated model candidates from a comma separated string."""
    models: List[str] = []
    for name in (raw if raw is not None else settings.LLM_MODELS).split(","):
        name = name.strip()
        if name and name not in models:
            models.append(name)
    return models


def get_admin_nicknames() -> List[str]:
    return [n.strip() for n in settings.ADMIN_NICKNAMES.split(",") if n.strip()]
