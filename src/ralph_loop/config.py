"""Runtime configuration for the coordination directory and its participants."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

DEFAULT_STATE_DIR = ".ralph"


@dataclass(slots=True)
class LockSettings:
    """Ledger mutex acquisition settings."""

    timeout_seconds: float = 5.0
    retry_seconds: float = 0.025


@dataclass(slots=True)
class LimitSettings:
    """Size bounds for documents read from the coordination directory."""

    max_state_bytes: int = 1024 * 1024
    max_step_bytes: int = 512 * 1024
    max_lock_bytes: int = 16 * 1024


@dataclass(slots=True)
class VerificationSettings:
    """External verification command settings."""

    timeout_seconds: int = 600
    output_limit: int = 2_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    state_dir: str = DEFAULT_STATE_DIR
    log_level: str = "WARNING"
    lock: LockSettings = field(default_factory=LockSettings)
    limits: LimitSettings = field(default_factory=LimitSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)

    @classmethod
    def from_env(cls, state_dir: str | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local loops."""

        return cls(
            state_dir=state_dir or os.getenv("RALPH_STATE_DIR", DEFAULT_STATE_DIR),
            log_level=os.getenv("RALPH_LOG_LEVEL", "WARNING").strip().upper(),
            lock=LockSettings(
                timeout_seconds=_env_float("RALPH_LOCK_TIMEOUT_SECONDS", 5.0),
                retry_seconds=_env_float("RALPH_LOCK_RETRY_SECONDS", 0.025),
            ),
            limits=LimitSettings(
                max_state_bytes=_env_int("RALPH_MAX_STATE_BYTES", 1024 * 1024),
                max_step_bytes=_env_int("RALPH_MAX_STEP_BYTES", 512 * 1024),
            ),
            verification=VerificationSettings(
                timeout_seconds=_env_int("RALPH_TEST_TIMEOUT_SECONDS", 600),
                output_limit=_env_int("RALPH_TEST_OUTPUT_LIMIT", 2_000),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for non-positive bounds or unknown log level."""

        if self.lock.timeout_seconds <= 0:
            raise ValueError("RALPH_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.lock.retry_seconds <= 0:
            raise ValueError("RALPH_LOCK_RETRY_SECONDS must be > 0.")
        if self.limits.max_state_bytes <= 0 or self.limits.max_step_bytes <= 0:
            raise ValueError("RALPH_MAX_STATE_BYTES and RALPH_MAX_STEP_BYTES must be > 0.")
        if self.verification.timeout_seconds <= 0:
            raise ValueError("RALPH_TEST_TIMEOUT_SECONDS must be > 0.")
        if self.verification.output_limit <= 0:
            raise ValueError("RALPH_TEST_OUTPUT_LIMIT must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid RALPH_LOG_LEVEL: {self.log_level!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error
