"""Configuration management for TaskLink MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class TaskLinkSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    manifest_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("manifests"),), validation_alias="TASKLINK_MANIFEST_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="TASKLINK_LOG_LEVEL")
    confidence_threshold: float = Field(
        default=0.6, validation_alias="TASKLINK_CONFIDENCE_THRESHOLD"
    )
    heartbeat_interval: float = Field(
        default=15.0, validation_alias="TASKLINK_HEARTBEAT_INTERVAL"
    )
    max_payload_length: int = Field(
        default=50_000, validation_alias="TASKLINK_MAX_PAYLOAD_LENGTH"
    )
    subscriber_queue_size: int = Field(
        default=256, validation_alias="TASKLINK_SUBSCRIBER_QUEUE_SIZE"
    )
    transport: str = Field(default="stdio", validation_alias="TASKLINK_TRANSPORT")
    host: str = Field(default="127.0.0.1", validation_alias="TASKLINK_HOST")
    port: int = Field(default=7890, validation_alias="TASKLINK_PORT")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "TASKLINK_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("manifest_paths", mode="before")
    @classmethod
    def _parse_manifest_paths(cls, value):
        if value is None or value == "":
            return (Path("manifests"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("manifests"),)
        raise TypeError("TASKLINK_MANIFEST_PATHS must be a list of paths or a path-separated string")

    @field_validator("confidence_threshold")
    @classmethod
    def _validate_confidence_threshold(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("TASKLINK_CONFIDENCE_THRESHOLD must be in (0, 1]")
        return value

    @field_validator("heartbeat_interval")
    @classmethod
    def _validate_heartbeat_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("TASKLINK_HEARTBEAT_INTERVAL must be > 0")
        return value

    @field_validator("max_payload_length", "subscriber_queue_size")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Payload and queue limits must be >= 1")
        return value

    @field_validator("transport")
    @classmethod
    def _normalize_transport(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"stdio", "http", "sse"}:
            raise ValueError("TASKLINK_TRANSPORT must be one of stdio, http, sse")
        return normalized


@lru_cache(maxsize=1)
def get_settings() -> TaskLinkSettings:
    """Return cached settings instance."""

    settings = TaskLinkSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.manifest_paths = tuple(path.expanduser().resolve() for path in settings.manifest_paths)
    return settings


__all__ = ["TaskLinkSettings", "get_settings"]
