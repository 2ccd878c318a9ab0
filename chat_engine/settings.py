from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Read from OS env and optional .env file in project root.
    _project_root = Path(__file__).parent.parent

    model_config = SettingsConfigDict(
        env_file=str(_project_root / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Credentials
    gemini_api_keys: str = Field(
        "",
        alias="GEMINI_API_KEYS",
        description="Comma separated pool of Gemini API keys; empty disables the pool",
    )
    gemini_api_key: str | None = Field(
        default=None,
        alias="GEMINI_API_KEY",
        description="Default key used when the key pool is empty",
    )
    key_cooldown_seconds: float = Field(
        300.0,
        alias="KEY_COOLDOWN_SECONDS",
        description="Window after a reported failure during which a key is deprioritised",
        gt=0,
    )

    # Session storage
    session_storage_limit_bytes: int = Field(
        5 * 1024 * 1024,
        alias="SESSION_STORAGE_LIMIT_BYTES",
        description="Upper bound for the serialized conversation payload",
        gt=0,
    )
    session_storage_key: str = Field(
        "gemini_chat_sessions",
        alias="SESSION_STORAGE_KEY",
        description="Key under which the conversation list is stored",
    )
    storage_backend: str = Field(
        "file",
        alias="STORAGE_BACKEND",
        description="Storage substrate for conversations: 'file' or 'redis'",
    )
    storage_dir: str = Field(
        "data",
        alias="STORAGE_DIR",
        description="Directory used by the file storage backend",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL, e.g. 'redis://redis:6379/0'",
    )

    # Titles
    auto_title_with_model: bool = Field(
        False,
        alias="AUTO_TITLE_WITH_MODEL",
        description="Ask a small model for a conversation title after the first message",
    )
    title_model_id: str = Field(
        "gemini-2.5-flash-lite",
        alias="TITLE_MODEL_ID",
        description="Model used for automatic conversation titles",
    )

    # Logging
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="Root log level",
    )
    log_timezone: str | None = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="IANA timezone for log timestamps; defaults to the system timezone",
    )
    log_dir: str = Field(
        "logs",
        alias="LOG_DIR",
        description="Directory for daily log files",
    )

    def api_key_list(self) -> list[str]:
        keys = [item.strip() for item in self.gemini_api_keys.split(",") if item.strip()]
        return list(dict.fromkeys(keys))


settings = Settings()
