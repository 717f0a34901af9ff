"""
Configuration for the oplog tailer command line tool.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MongoSettings(BaseSettings):
    """MongoDB connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    uri: str = Field(default="mongodb://localhost:27017", description="MongoDB connection URI")
    replica_set: Optional[str] = Field(default=None, description="Replica set name")
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")

    def client_options(self) -> dict:
        """Keyword arguments for ``pymongo.MongoClient``."""
        options = {
            "connectTimeoutMS": self.connect_timeout * 1000,
            "serverSelectionTimeoutMS": self.server_selection_timeout * 1000,
        }
        if self.replica_set:
            options["replicaSet"] = self.replica_set
        return options


class OplogSettings(BaseSettings):
    """Oplog tailing configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OPLOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    namespace: str = Field(default="local.oplog.rs", description="Oplog namespace")
    no_cursor_timeout: bool = Field(default=True, description="Disable the server's idle cursor timeout")
    await_time_ms: Optional[int] = Field(default=1000, description="Max time a pull blocks waiting for new entries")

    # Reconnect settings
    max_reconnects: int = Field(default=5, description="Consecutive reconnect attempts before giving up")
    reconnect_backoff_max: int = Field(default=60, description="Max seconds between reconnect attempts")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    json_logs: bool = Field(default=False, description="Emit JSON-structured logs")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        database, _, collection = v.partition(".")
        if not database or not collection:
            raise ValueError("namespace must look like 'db.collection'")
        return v

    @field_validator("await_time_ms")
    @classmethod
    def validate_await_time(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("await_time_ms must be positive")
        return v

    @field_validator("max_reconnects")
    @classmethod
    def validate_max_reconnects(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_reconnects must be non-negative")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()


class Settings(BaseSettings):
    """Main settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    mongo: MongoSettings = Field(default_factory=MongoSettings)
    oplog: OplogSettings = Field(default_factory=OplogSettings)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
