"""Crash-safe filesystem primitives: atomic replace, exclusive create, bounded mutex."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ralph_loop.coordination.errors import CorruptionError, LockTimeoutError, StorageError
from ralph_loop.coordination.models import utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_JSON_BYTES = 1024 * 1024


def dump_json(payload: dict[str, Any]) -> str:
    """Deterministic JSON formatting shared by every coordination document."""

    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)


def write_text_atomic(path: Path, content: str) -> None:
    """Write ``content`` so that readers never observe a partial file.

    The text goes to a uniquely named sibling first and is then moved over
    the target with ``os.replace``, which stays on the same filesystem.
    """

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
    except OSError as error:
        raise StorageError(
            "Failed to write file",
            {"filePath": str(path), "message": str(error)},
        ) from error
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError as error:
        try_unlink(Path(tmp_path))
        raise StorageError(
            "Failed to write file",
            {"filePath": str(path), "message": str(error)},
        ) from error


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    write_text_atomic(path, dump_json(payload))


def read_json(path: Path, *, max_bytes: int = DEFAULT_MAX_JSON_BYTES) -> dict[str, Any]:
    """Load a JSON object, failing closed on oversized or unparsable content.

    A missing file propagates as ``FileNotFoundError`` so callers can map it
    to their own "not found" condition.
    """

    try:
        size = path.stat().st_size
    except FileNotFoundError:
        raise
    except OSError as error:
        raise StorageError(
            "Failed to read JSON file",
            {"filePath": str(path), "message": str(error)},
        ) from error
    if size > max_bytes:
        raise CorruptionError(
            "Refusing to read oversized JSON file",
            {"filePath": str(path), "size": size, "maxBytes": max_bytes},
        )
    try:
        payload = json.loads(path.read_text("utf-8"))
    except FileNotFoundError:
        raise
    except (OSError, UnicodeDecodeError, ValueError) as error:
        raise CorruptionError(
            "Failed to read JSON file",
            {"filePath": str(path), "message": str(error)},
        ) from error
    if not isinstance(payload, dict):
        raise CorruptionError("Expected JSON object", {"filePath": str(path)})
    return payload


def try_read_json(
    path: Path,
    *,
    max_bytes: int = DEFAULT_MAX_JSON_BYTES,
) -> dict[str, Any] | None:
    """Best-effort variant of :func:`read_json`: ``None`` for missing or unusable files."""

    try:
        return read_json(path, max_bytes=max_bytes)
    except (FileNotFoundError, CorruptionError, StorageError):
        return None


def try_unlink(path: Path) -> bool:
    try:
        path.unlink()
    except OSError:
        return False
    return True


def try_acquire(lock_path: Path, payload: dict[str, Any]) -> bool:
    """Create ``lock_path`` exclusively.

    Returns ``False`` when the lock is already held; any other I/O failure is
    raised as :class:`StorageError`.
    """

    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with lock_path.open("x", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False))
    except FileExistsError:
        return False
    except OSError as error:
        raise StorageError(
            "Failed to create lock file",
            {"lockPath": str(lock_path), "message": str(error)},
        ) from error
    return True


@contextmanager
def mutex(
    lock_path: Path,
    *,
    timeout_seconds: float = 5.0,
    retry_seconds: float = 0.025,
) -> Iterator[None]:
    """Hold an exclusive-create lock for the duration of the block.

    Acquisition is retried on a fixed interval until ``timeout_seconds``
    elapse. Stale locks are never taken over; they must be cleared explicitly.
    """

    deadline = time.monotonic() + timeout_seconds
    attempts = 0
    while not try_acquire(lock_path, {"pid": os.getpid(), "createdAt": utc_now_iso()}):
        attempts += 1
        if time.monotonic() >= deadline:
            raise LockTimeoutError(
                "Timed out acquiring lock",
                {"lockPath": str(lock_path), "timeoutSeconds": timeout_seconds},
            )
        time.sleep(retry_seconds)
    if attempts:
        logger.debug("Acquired %s after %d retries", lock_path, attempts)
    try:
        yield
    finally:
        if not try_unlink(lock_path):
            logger.warning("Failed to release lock %s", lock_path)
