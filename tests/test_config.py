from __future__ import annotations

import allure
import pytest

from ralph_loop.config import DEFAULT_STATE_DIR, LockSettings, Settings, VerificationSettings

pytestmark = [
    allure.epic("Loop Coordination"),
    allure.feature("Configuration"),
]


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.state_dir == DEFAULT_STATE_DIR
    assert settings.log_level == "WARNING"
    assert settings.lock.timeout_seconds == 5.0
    assert settings.lock.retry_seconds == 0.025
    assert settings.verification.output_limit == 2_000
    settings.validate()


def test_from_env_reads_overrides(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_STATE_DIR", "coord")
    monkeypatch.setenv("RALPH_LOCK_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("RALPH_TEST_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("RALPH_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.state_dir == "coord"
    assert settings.lock.timeout_seconds == 1.5
    assert settings.verification.timeout_seconds == 30
    assert settings.log_level == "DEBUG"


def test_explicit_state_dir_wins_over_env(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_STATE_DIR", "coord")

    assert Settings.from_env(state_dir="other").state_dir == "other"


def test_from_env_rejects_malformed_number(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_MAX_STEP_BYTES", "lots")

    with pytest.raises(ValueError, match="RALPH_MAX_STEP_BYTES"):
        Settings.from_env()


def test_validate_rejects_non_positive_lock_timeout() -> None:
    settings = Settings(lock=LockSettings(timeout_seconds=0))

    with pytest.raises(ValueError, match="RALPH_LOCK_TIMEOUT_SECONDS"):
        settings.validate()


def test_validate_rejects_non_positive_output_limit() -> None:
    settings = Settings(verification=VerificationSettings(output_limit=0))

    with pytest.raises(ValueError, match="RALPH_TEST_OUTPUT_LIMIT"):
        settings.validate()


def test_validate_rejects_unknown_log_level() -> None:
    with pytest.raises(ValueError, match="RALPH_LOG_LEVEL"):
        Settings(log_level="CHATTY").validate()
