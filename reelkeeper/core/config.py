# Copyright (c) 2025 Trae AI. All rights reserved.

import yaml
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, ValidationError, field_validator, model_validator
from .errors import ConfigurationError

DEFAULT_VIDEO_EXTENSIONS = [".mkv", ".mp4", ".avi", ".m4v", ".mov", ".ts", ".wmv", ".webm"]


class Config(BaseModel):
    roots: List[Path]
    database_path: Path = Path("data/library.db")
    video_extensions: List[str] = DEFAULT_VIDEO_EXTENSIONS
    tmdb_api_key: Optional[str] = None
    language: str = "en-US"

    # Matching policy
    high_confidence: float = 0.85
    low_confidence: float = 0.6
    ambiguity_margin: float = 0.05
    cache_ttl_seconds: int = 86400

    # Provider retry policy
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 32.0
    request_timeout: float = 10.0
    max_concurrency: int = 4

    # Reconciliation policy
    orphan_grace_cycles: int = 3
    missing_debounce_cycles: int = 2

    completion_fraction: float = 0.9

    scan_interval_minutes: int = 60
    watch_files: bool = True
    file_watch_debounce_seconds: int = 30
    server_port: int = 5000
    server_host: str = "0.0.0.0"
    verbose: bool = False

    @field_validator("video_extensions")
    @classmethod
    def _normalize_extensions(cls, value: List[str]) -> List[str]:
        normalized = []
        for ext in value:
            ext = ext.lower().strip()
            if not ext.startswith("."):
                ext = "." + ext
            normalized.append(ext)
        return normalized

    @field_validator("high_confidence", "low_confidence", "ambiguity_margin", "completion_fraction")
    @classmethod
    def _unit_interval(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("must be between 0 and 1")
        return value

    @field_validator("orphan_grace_cycles")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("max_attempts", "max_concurrency", "missing_debounce_cycles")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> "Config":
        if self.low_confidence > self.high_confidence:
            raise ValueError("low_confidence must not exceed high_confidence")
        return self

    @classmethod
    def load(cls, path: str = "config.yaml") -> "Config":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}") from e
        try:
            return cls(**data)
        except (ValidationError, TypeError) as e:
            raise ConfigurationError(f"Invalid config {path}: {e}") from e
