"""Path layout and input validation for the coordination directory."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath

from ralph_loop.coordination.errors import InvalidInputError

STATE_FILE_NAME = "ralph-state.json"
STATE_LOCK_NAME = "ralph-state.lock"
MAX_STEP_ID_LENGTH = 200
MAX_ENCODED_ID_CHARS = 500


def assert_safe_step_id(step_id: str) -> str:
    """Validate a step id against the filename allow-list."""

    if not isinstance(step_id, str) or not step_id:
        raise InvalidInputError("Step ID is required")
    if len(step_id) > MAX_STEP_ID_LENGTH:
        raise InvalidInputError("Step ID too long", {"maxLength": MAX_STEP_ID_LENGTH})
    if "\0" in step_id:
        raise InvalidInputError("Step ID contains null byte")
    if "/" in step_id or "\\" in step_id:
        raise InvalidInputError("Step ID must not contain path separators", {"stepId": step_id})
    if step_id in {".", ".."}:
        raise InvalidInputError("Invalid step ID", {"stepId": step_id})
    return step_id


def assert_safe_state_dir(state_dir: str) -> str:
    """Validate that the state dir is relative and free of dot segments."""

    if not isinstance(state_dir, str) or not state_dir:
        raise InvalidInputError("state-dir is required")
    if "\0" in state_dir:
        raise InvalidInputError("state-dir contains null byte")
    if PurePosixPath(state_dir).is_absolute() or PureWindowsPath(state_dir).is_absolute():
        raise InvalidInputError("state-dir must be a relative path", {"stateDir": state_dir})
    parts = [part for part in state_dir.replace("\\", "/").split("/") if part]
    if not parts:
        raise InvalidInputError("state-dir must not be empty")
    if any(part in {".", ".."} for part in parts):
        raise InvalidInputError(
            'state-dir must not contain "." or ".." segments',
            {"stateDir": state_dir},
        )
    return state_dir


def resolve_in_workdir(workdir: Path, relative_path: str) -> Path:
    """Resolve a caller path, refusing anything that escapes the working directory."""

    if not isinstance(relative_path, str) or not relative_path:
        raise InvalidInputError("Path is required")
    if "\0" in relative_path:
        raise InvalidInputError("Path contains null byte")
    if PurePosixPath(relative_path).is_absolute() or PureWindowsPath(relative_path).is_absolute():
        raise InvalidInputError("Path must be relative", {"relPath": relative_path})
    root = workdir.resolve()
    resolved = (root / relative_path).resolve()
    if resolved == root or root not in resolved.parents:
        raise InvalidInputError("Path escapes working directory", {"relPath": relative_path})
    return resolved


def encode_id_for_filename(value: str | None) -> str:
    """Filesystem-safe, collision-resistant encoding of a participant id."""

    text = value or ""
    if not text:
        return "empty"
    raw = text[:MAX_ENCODED_ID_CHARS].encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


@dataclass(frozen=True, slots=True)
class StateLayout:
    """Deterministic file layout under one coordination root."""

    root: Path

    @classmethod
    def for_workdir(cls, workdir: Path, state_dir: str) -> StateLayout:
        return cls(root=workdir / assert_safe_state_dir(state_dir))

    @property
    def state_file(self) -> Path:
        return self.root / STATE_FILE_NAME

    @property
    def state_lock(self) -> Path:
        return self.root / STATE_LOCK_NAME

    @property
    def steps_dir(self) -> Path:
        return self.root / "steps"

    @property
    def progress_dir(self) -> Path:
        return self.root / "progress"

    @property
    def validation_dir(self) -> Path:
        return self.root / "validation"

    @property
    def archive_dir(self) -> Path:
        return self.root / "archive"

    def step_file(self, step_id: str) -> Path:
        return self.steps_dir / f"{assert_safe_step_id(step_id)}.json"

    def step_lock(self, step_id: str) -> Path:
        return self.steps_dir / f"{assert_safe_step_id(step_id)}.lock"

    def progress_file(self, worker_id: str) -> Path:
        return self.progress_dir / f"worker-{encode_id_for_filename(worker_id)}.json"

    def validation_file(self, iteration: int) -> Path:
        return self.validation_dir / f"iteration-{iteration}.json"
