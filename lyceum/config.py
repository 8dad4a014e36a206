"""Lyceum configuration — all tuneable settings in one place."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _default_data_dir() -> Path:
    """Resolve the data directory: $LYCEUM_DATA or ./data."""
    env = os.environ.get("LYCEUM_DATA")
    if env:
        return Path(env)
    return Path(__file__).resolve().parent.parent / "data"


class PolicyConfig(BaseModel):
    """Knobs mapping a publication's review grades to publish / reject.

    A copy is stored on every experiment when it is created, so changing these
    defaults never alters the rules of an experiment already in flight.
    """

    min_accepts: int = Field(
        default_factory=lambda: _env_int("LYCEUM_POLICY_MIN_ACCEPTS", 2),
        ge=0,
        description="ACCEPT/STRONG_ACCEPT grades needed to publish (capped by reviewers requested)",
    )
    max_rejects: int = Field(
        default_factory=lambda: _env_int("LYCEUM_POLICY_MAX_REJECTS", 0),
        ge=0,
        description="REJECT grades tolerated before the publication is rejected",
    )
    strong_reject_veto: bool = Field(
        default_factory=lambda: _env_bool("LYCEUM_POLICY_STRONG_REJECT_VETO", True),
        description="A single STRONG_REJECT rejects the publication",
    )
    require_all_requested: bool = Field(
        default_factory=lambda: _env_bool("LYCEUM_POLICY_REQUIRE_ALL", True),
        description="Wait for every requested reviewer before deciding",
    )


class RunnerConfig(BaseModel):
    """Scheduler settings for driving agents against an experiment."""

    reviewers: int = Field(
        default_factory=lambda: _env_int("LYCEUM_REVIEWERS", 4),
        ge=0,
        description="Reviewers requested for each new publication",
    )
    max_retries: int = Field(
        default_factory=lambda: _env_int("LYCEUM_MAX_RETRIES", 3),
        ge=1,
        description="Model invocation attempts before an agent is marked stalled",
    )
    retry_base_delay: float = Field(
        default_factory=lambda: _env_float("LYCEUM_RETRY_BASE_DELAY", 2.0),
        ge=0.0,
    )
    retry_max_delay: float = Field(
        default_factory=lambda: _env_float("LYCEUM_RETRY_MAX_DELAY", 60.0),
        ge=0.0,
    )
    max_idle_steps: int = Field(
        default=3,
        ge=1,
        description="Consecutive steps without tool calls after which an agent stops",
    )
    max_steps: int | None = Field(
        default=None,
        description="Optional per-agent step ceiling for one run",
    )


class ServerConfig(BaseModel):
    """Network and logging settings."""

    host: str = Field(default_factory=lambda: os.environ.get("LYCEUM_HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: _env_int("LYCEUM_PORT", 8000))
    log_level: str = Field(default_factory=lambda: os.environ.get("LYCEUM_LOG_LEVEL", "info"))
    log_json: bool = Field(default_factory=lambda: _env_bool("LYCEUM_LOG_JSON", False))


class Config(BaseModel):
    """Top-level Lyceum configuration."""

    environment: str = Field(default_factory=lambda: os.environ.get("LYCEUM_ENV", "development"))
    data_dir: Path = Field(default_factory=_default_data_dir)
    db_filename: str = Field(default="lyceum.db")
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    model_invoker: str = Field(
        default_factory=lambda: os.environ.get("LYCEUM_MODEL_INVOKER", ""),
        description="Import path 'module:factory' of the model invocation collaborator",
    )

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    def ensure_dirs(self) -> None:
        """Create the data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)


# Singleton, importable everywhere as `from lyceum.config import settings`
settings = Config()
