"""External verification command detection and execution.

The monitor never interprets what the command does; only the exit status
and a bounded preview of its combined output are kept.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_LIMIT = 2_000


@dataclass(slots=True)
class VerificationResult:
    """Exit-status verdict of one verification command run."""

    command: str
    passing: bool
    output: str
    exit_code: int | None = None


def detect_test_command(workdir: Path) -> str | None:
    """Guess the project's test command from well-known build files."""

    package_json = workdir / "package.json"
    if package_json.is_file():
        scripts = _package_scripts(package_json)
        if "test" in scripts:
            return "npm test"
        if (workdir / "jest.config.js").is_file():
            return "npx jest"
    if any((workdir / name).is_file() for name in ("pyproject.toml", "pytest.ini", "setup.cfg")):
        return "pytest"
    if (workdir / "go.mod").is_file():
        return "go test ./..."
    if (workdir / "Cargo.toml").is_file():
        return "cargo test"
    return None


def run_verification(
    command: str,
    *,
    workdir: Path,
    timeout_seconds: int = 600,
    output_limit: int = DEFAULT_OUTPUT_LIMIT,
) -> VerificationResult:
    """Run ``command`` in ``workdir``; a command that cannot start counts as failing."""

    try:
        argv = shlex.split(command, posix=os.name != "nt")
    except ValueError as error:
        return VerificationResult(
            command=command,
            passing=False,
            output=f"Invalid command: {error}",
        )
    if not argv:
        return VerificationResult(
            command=command,
            passing=False,
            output="Configured command is empty.",
        )

    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            check=False,
            capture_output=True,
            text=True,
            errors="replace",
            cwd=workdir,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as error:
        logger.warning("Verification command timed out after %ss: %s", timeout_seconds, command)
        partial = _combine(_as_text(error.stdout), _as_text(error.stderr))
        return VerificationResult(
            command=command,
            passing=False,
            output=_truncate(
                f"Timed out after {timeout_seconds}s. {partial}".strip(),
                output_limit,
            ),
        )
    except OSError as error:
        logger.warning("Verification command failed to start: %s (%s)", command, error)
        return VerificationResult(
            command=command,
            passing=False,
            output=_truncate(f"Failed to start: {error}", output_limit),
        )

    combined = _combine(completed.stdout, completed.stderr)
    return VerificationResult(
        command=command,
        passing=completed.returncode == 0,
        output=_truncate(combined, output_limit),
        exit_code=completed.returncode,
    )


def _package_scripts(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError):
        return {}
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _combine(stdout: str, stderr: str) -> str:
    return f"{stdout}\n{stderr}".strip()


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit]
