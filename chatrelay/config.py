from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.logging import get_logger

logger = get_logger(__name__)


class CompletionBackend(str, Enum):
    """Completion client implementations the runtime can build."""

    OPENAI = "openai"
    STUB = "stub"


class ConfigurationError(RuntimeError):
    """Raised when the process is started without its required settings."""

    def __init__(self, missing: list[str]):
        super().__init__(
            "missing required configuration: {}".format(", ".join(missing))
        )
        self.missing = missing


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the stores, token signer and completion client."""

    # Primary user store + conversation store (MongoDB)
    mongo_uri: str | None = env_field(None, "MONGO_URI")
    mongo_db_name: str = env_field("chatrelay", "MONGO_DB_NAME")
    # Secondary user store (relational mirror)
    db_host: str | None = env_field(None, "DB_HOST")
    db_user: str | None = env_field(None, "DB_USER")
    db_password: str | None = env_field(None, "DB_PASSWORD")
    db_name: str | None = env_field(None, "DB_NAME")
    db_port: int = env_field(5432, "DB_PORT")
    # Bearer credentials
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("chatrelay", "JWT_ISSUER")
    jwt_audience: str = env_field("chatrelay-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of issued bearer credentials; also the staleness window for deleted users",
    )
    # Completion service
    completion_backend: CompletionBackend = env_field(
        CompletionBackend.OPENAI, "COMPLETION_BACKEND"
    )
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    completion_model: str = env_field("gpt-4", "COMPLETION_MODEL")
    completion_temperature: float = env_field(1.0, "COMPLETION_TEMPERATURE")
    completion_max_tokens: int = env_field(256, "COMPLETION_MAX_TOKENS")
    completion_timeout_seconds: float = env_field(30.0, "COMPLETION_TIMEOUT_SECONDS")
    chat_history_limit: int | None = env_field(
        None,
        "CHAT_HISTORY_LIMIT",
        description="Replay only the most recent N turns; unset replays the full history",
    )
    # Process
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8080, "PORT")
    cors_allow_origins: list[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("completion_backend")
    @classmethod
    def _validate_backend(cls, value: CompletionBackend) -> CompletionBackend:
        return CompletionBackend(value)

    @field_validator("chat_history_limit", mode="before")
    @classmethod
    def _blank_limit_is_unbounded(cls, value: Any) -> Any:
        if value in ("", None):
            return None
        return value

    @field_validator("chat_history_limit")
    @classmethod
    def _validate_history_limit(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("CHAT_HISTORY_LIMIT must be a positive integer")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    def _required_env(self) -> dict[str, Any]:
        required: dict[str, Any] = {"JWT_SECRET": self.jwt_secret}
        if not self.use_memory_store:
            required.update(
                {
                    "MONGO_URI": self.mongo_uri,
                    "DB_HOST": self.db_host,
                    "DB_USER": self.db_user,
                    "DB_PASSWORD": self.db_password,
                    "DB_NAME": self.db_name,
                }
            )
        if self.completion_backend == CompletionBackend.OPENAI:
            required["OPENAI_API_KEY"] = self.openai_api_key
        return required

    def missing_required(self) -> list[str]:
        """Return env var names of required settings that are unset."""
        return [name for name, value in self._required_env().items() if not value]

    def ensure_complete(self) -> None:
        missing = self.missing_required()
        if missing:
            logger.error("settings_incomplete", missing=missing)
            raise ConfigurationError(missing)

    def mirror_conninfo(self) -> str:
        """libpq keyword/value connection string for the mirror database."""

        from psycopg.conninfo import make_conninfo

        return make_conninfo(
            host=self.db_host,
            port=self.db_port,
            user=self.db_user,
            password=self.db_password,
            dbname=self.db_name,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
