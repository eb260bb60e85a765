"""Lock reclamation, archival copies and guarded teardown of the coordination directory."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ralph_loop.coordination.errors import InvalidInputError
from ralph_loop.coordination.paths import STATE_FILE_NAME, StateLayout

logger = logging.getLogger(__name__)

STEP_ARTIFACT_SUFFIXES = (".json", ".md", ".txt", ".log")


@dataclass(slots=True)
class ArchiveResult:
    """Per-file salvage counters for one archive run."""

    archived: int = 0
    errors: int = 0
    directory: Path | None = None


@dataclass(slots=True)
class RemovalResult:
    removed: bool
    error: str | None = None


class Archiver:
    """Best-effort maintenance operations; each one is independently invocable."""

    def __init__(self, layout: StateLayout, *, workdir: Path | None = None) -> None:
        self.layout = layout
        self.workdir = workdir or Path.cwd()

    def cleanup_locks(self) -> int:
        """Remove every step lock and the ledger lock; one bad file never blocks the rest."""

        removed = 0
        lock_files: list[Path] = []
        if self.layout.steps_dir.is_dir():
            lock_files.extend(sorted(self.layout.steps_dir.glob("*.lock")))
        lock_files.append(self.layout.state_lock)
        for lock_file in lock_files:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.warning("Failed to remove lock %s: %s", lock_file, error)
                continue
            removed += 1
        logger.info("Removed %d lock file(s) under %s", removed, self.layout.root)
        return removed

    def archive(self) -> ArchiveResult:
        """Copy step, validation and progress files plus the ledger into a timestamped folder."""

        timestamp = datetime.now(tz=UTC).isoformat(timespec="milliseconds")
        stamp = timestamp.replace("+00:00", "Z").replace(":", "-").replace(".", "-")
        target = self.layout.archive_dir / f"iteration-{stamp}"
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            logger.warning("Failed to create archive directory %s: %s", target, error)
            return ArchiveResult(errors=1)

        result = ArchiveResult(directory=target)
        self._copy_dir(
            self.layout.steps_dir,
            target,
            result,
            lambda path: path.suffix in STEP_ARTIFACT_SUFFIXES,
        )
        self._copy_dir(self.layout.validation_dir, target, result, _is_json)
        self._copy_dir(self.layout.progress_dir, target, result, _is_json)
        if self.layout.state_file.is_file():
            self._copy_file(self.layout.state_file, target / STATE_FILE_NAME, result)
        logger.info(
            "Archived %d file(s) to %s (%d error(s))",
            result.archived,
            target,
            result.errors,
        )
        return result

    def remove_all(self, *, confirm: bool) -> RemovalResult:
        """Delete the whole coordination directory; refuses to delete the working directory."""

        if not confirm:
            raise InvalidInputError("Refusing to remove state directory without force")
        root = self.layout.root
        if not root.exists():
            return RemovalResult(removed=False, error="State directory does not exist")
        resolved_root = root.resolve()
        resolved_workdir = self.workdir.resolve()
        if resolved_root == resolved_workdir or resolved_root in resolved_workdir.parents:
            return RemovalResult(removed=False, error="Refusing to remove working directory")
        try:
            shutil.rmtree(root)
        except OSError as error:
            logger.warning("Failed to remove %s: %s", root, error)
            return RemovalResult(removed=False, error=str(error))
        logger.info("Removed state directory %s", root)
        return RemovalResult(removed=True)

    def _copy_dir(
        self,
        source: Path,
        target: Path,
        result: ArchiveResult,
        include: Callable[[Path], bool],
    ) -> None:
        if not source.is_dir():
            return
        for path in sorted(source.iterdir()):
            if path.is_file() and include(path):
                self._copy_file(path, target / f"{source.name}-{path.name}", result)

    def _copy_file(self, source: Path, destination: Path, result: ArchiveResult) -> None:
        try:
            shutil.copyfile(source, destination)
        except OSError as error:
            logger.warning("Failed to archive %s: %s", source, error)
            result.errors += 1
            return
        result.archived += 1


def _is_json(path: Path) -> bool:
    return path.suffix == ".json"
