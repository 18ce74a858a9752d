import os
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

DEFAULT_EXTENSIONS = [
    ".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm",
    ".m4v", ".mpeg", ".mpg", ".3gp", ".ts", ".mts",
]


def default_concurrency() -> int:
    """75% of available CPUs, never below 1."""
    return max(1, int((os.cpu_count() or 1) * 0.75))


class GeneralConfig(BaseModel):
    data_dir: str = "."
    concurrency: Optional[int] = Field(default=None, gt=0)  # None = default_concurrency()
    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    log_path: Optional[str] = None
    recover_on_start: bool = True
    debug: bool = False

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        normalized = []
        for ext in v:
            ext = ext.strip().lower()
            if not ext:
                continue
            normalized.append(ext if ext.startswith(".") else f".{ext}")
        return normalized

    @property
    def effective_concurrency(self) -> int:
        return self.concurrency or default_concurrency()

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def database_path(self) -> Path:
        return self.data_path / "videos-checker.db"

    @property
    def logs_dir(self) -> Path:
        return self.data_path / "logs"

    @property
    def lock_path(self) -> Path:
        return self.data_path / "vcheck.lock"


class CheckerConfig(BaseModel):
    """External verification tools."""
    ffprobe_path: str = "ffprobe"
    ffmpeg_path: str = "ffmpeg"
    max_error_length: int = Field(default=4000, ge=80)


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8765, ge=1, le=65535)
    keepalive_s: float = Field(default=30.0, gt=0)  # SSE ping interval on idle streams


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    checker: CheckerConfig = Field(default_factory=CheckerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
