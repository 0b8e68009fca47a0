"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3010, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Security
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Storage
    storage: Literal["database", "memory"] = Field(default="database")
    database_url: str = Field(default="sqlite+aiosqlite:///./data/relayflow.db")
    database_echo: bool = Field(default=False)

    # Execution Engine
    default_max_retries: int = Field(default=3, ge=0, le=20)
    default_retry_delay_ms: int = Field(default=1000, ge=0)
    max_parallel_nodes: int = Field(default=8, ge=1, le=256)
    http_timeout: float = Field(default=30.0, gt=0)

    # Triggers
    default_timezone: str = Field(default="UTC")
    webhook_prefix: str = Field(default="/webhook")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":memory:" not in v:
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("webhook_prefix")
    @classmethod
    def validate_webhook_prefix(cls, v):
        return "/" + v.strip("/")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
