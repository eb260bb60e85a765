"""Per-step claim/complete lifecycle backed by step files and exclusive locks."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph_loop.coordination.errors import (
    CorruptionError,
    InvalidInputError,
    LockMissingError,
    OwnershipError,
    StepLockedError,
    StepNotFoundError,
    StepUnavailableError,
    StorageError,
)
from ralph_loop.coordination.ledger import LedgerStore
from ralph_loop.coordination.models import (
    LockRecord,
    StepRecord,
    StepStatus,
    WorkerProgress,
    utc_now_iso,
)
from ralph_loop.coordination.paths import StateLayout, assert_safe_step_id, resolve_in_workdir
from ralph_loop.coordination.storage import (
    read_json,
    try_acquire,
    try_read_json,
    try_unlink,
    write_json_atomic,
    write_text_atomic,
)

logger = logging.getLogger(__name__)

MAX_STEP_BYTES = 512 * 1024
MAX_LOCK_BYTES = 16 * 1024


def generate_worker_id() -> str:
    return f"worker-{uuid.uuid4().hex[:8]}"


@dataclass(slots=True)
class ClaimResult:
    """Outcome of a successful claim."""

    step_id: str
    worker_id: str
    step_file: Path
    lock_file: Path
    step: StepRecord


@dataclass(slots=True)
class CompletionResult:
    """Outcome of complete/fail; ``already_complete`` marks an idempotent no-op."""

    step_id: str
    worker_id: str
    status: StepStatus
    finished_at: str | None
    already_complete: bool = False
    lock_removed: bool = False
    progress_file: Path | None = None
    output_file: Path | None = None


class StepRegistry:
    """Owns step files: exclusive claiming and ownership-checked completion."""

    def __init__(
        self,
        layout: StateLayout,
        ledger: LedgerStore,
        *,
        workdir: Path | None = None,
        max_step_bytes: int = MAX_STEP_BYTES,
        max_lock_bytes: int = MAX_LOCK_BYTES,
    ) -> None:
        self.layout = layout
        self.ledger = ledger
        self.workdir = workdir or Path.cwd()
        self.max_step_bytes = max_step_bytes
        self.max_lock_bytes = max_lock_bytes

    def read_step(self, step_id: str) -> StepRecord:
        """Read a step file, failing closed when it is missing or corrupt."""

        step_file = self.layout.step_file(step_id)
        try:
            payload = read_json(step_file, max_bytes=self.max_step_bytes)
        except FileNotFoundError as error:
            raise StepNotFoundError(
                f"Step file not found: {step_id}",
                {"stepId": step_id},
            ) from error
        return StepRecord.from_payload(payload, fallback_id=step_id)

    def claim(
        self,
        step_id: str,
        *,
        worker_id: str | None = None,
        force: bool = False,
    ) -> ClaimResult:
        """Take exclusive ownership of ``step_id``.

        Among concurrent callers on the same step exactly one succeeds; the
        others get :class:`StepUnavailableError` or :class:`StepLockedError`.
        If the ledger cannot be updated the step file and lock are rolled back
        and the ledger error propagates.
        """

        assert_safe_step_id(step_id)
        worker_id = worker_id or generate_worker_id()
        step_file = self.layout.step_file(step_id)
        lock_file = self.layout.step_lock(step_id)
        self._ensure_claimable(step_id, step_file, force=force)

        claimed_at = utc_now_iso()
        lock = LockRecord(worker_id=worker_id, claimed_at=claimed_at, pid=os.getpid())
        if not try_acquire(lock_file, lock.to_payload()):
            raise StepLockedError(f"Step {step_id} is currently locked", {"stepId": step_id})

        step = StepRecord(
            step_id=step_id,
            status=StepStatus.IN_PROGRESS,
            worker_id=worker_id,
            claimed_at=claimed_at,
        )
        try:
            # A rival may have claimed and finished between the first check and the lock.
            previous = self._ensure_claimable(step_id, step_file, force=force)
            write_json_atomic(step_file, step.to_payload())
        except BaseException:
            try_unlink(lock_file)
            raise

        try:
            self.ledger.record_step(
                step_id,
                status=StepStatus.IN_PROGRESS,
                worker_id=worker_id,
                claimed_at=claimed_at,
            )
        except BaseException:
            logger.warning("Ledger update failed; rolling back claim of %s", step_id)
            self._restore_step(step_file, previous)
            try_unlink(lock_file)
            raise

        logger.info("Step %s claimed by %s", step_id, worker_id)
        return ClaimResult(
            step_id=step_id,
            worker_id=worker_id,
            step_file=step_file,
            lock_file=lock_file,
            step=step,
        )

    def complete(
        self,
        step_id: str,
        *,
        worker_id: str | None = None,
        result: str | None = None,
        output_file: str | None = None,
    ) -> CompletionResult:
        """Mark an owned step complete; repeated calls are idempotent no-ops."""

        assert_safe_step_id(step_id)
        output_path = resolve_in_workdir(self.workdir, output_file) if output_file else None
        step = self.read_step(step_id)
        owner = self._resolve_owner(step, worker_id)

        if step.status == StepStatus.COMPLETE:
            return CompletionResult(
                step_id=step_id,
                worker_id=owner,
                status=StepStatus.COMPLETE,
                finished_at=step.completed_at,
                already_complete=True,
            )
        if step.status == StepStatus.FAILED:
            raise StepUnavailableError(f"Step {step_id} is already failed", {"stepId": step_id})

        lock_file = self._verify_lock(step_id, owner)

        step.status = StepStatus.COMPLETE
        step.completed_at = utc_now_iso()
        if result:
            step.result = result
        write_json_atomic(self.layout.step_file(step_id), step.to_payload())

        if output_path is not None:
            write_text_atomic(output_path, result or "Step completed")

        progress_file = self._record_progress(owner, step_id)
        lock_removed = self._release_lock(lock_file)
        self.ledger.record_step(
            step_id,
            status=StepStatus.COMPLETE,
            worker_id=owner,
            completed_at=step.completed_at,
        )
        logger.info("Step %s completed by %s", step_id, owner)
        return CompletionResult(
            step_id=step_id,
            worker_id=owner,
            status=StepStatus.COMPLETE,
            finished_at=step.completed_at,
            lock_removed=lock_removed,
            progress_file=progress_file,
            output_file=output_path,
        )

    def fail(
        self,
        step_id: str,
        *,
        worker_id: str | None = None,
        reason: str | None = None,
    ) -> CompletionResult:
        """Mark an owned in-progress step failed, releasing it for a later claim."""

        assert_safe_step_id(step_id)
        step = self.read_step(step_id)
        owner = self._resolve_owner(step, worker_id)
        if step.status != StepStatus.IN_PROGRESS:
            raise StepUnavailableError(
                f"Step {step_id} is {step.status.value}, not in-progress",
                {"stepId": step_id, "status": step.status.value},
            )

        lock_file = self._verify_lock(step_id, owner)

        step.status = StepStatus.FAILED
        step.failed_at = utc_now_iso()
        if reason:
            step.result = reason
        write_json_atomic(self.layout.step_file(step_id), step.to_payload())

        lock_removed = self._release_lock(lock_file)
        self.ledger.record_step(step_id, status=StepStatus.FAILED, worker_id=owner)
        logger.info("Step %s failed by %s", step_id, owner)
        return CompletionResult(
            step_id=step_id,
            worker_id=owner,
            status=StepStatus.FAILED,
            finished_at=step.failed_at,
            lock_removed=lock_removed,
        )

    def _ensure_claimable(
        self,
        step_id: str,
        step_file: Path,
        *,
        force: bool,
    ) -> dict[str, Any] | None:
        """Return the readable payload being replaced, if any."""

        if not step_file.exists():
            return None
        payload = try_read_json(step_file, max_bytes=self.max_step_bytes)
        if payload is None:
            if not force:
                raise CorruptionError(
                    "Step file is corrupted; rerun with force overwrite to reset",
                    {"stepId": step_id, "stepFile": str(step_file)},
                )
            logger.warning("Overwriting corrupted step file %s", step_file)
            return None
        existing = StepRecord.from_payload(payload, fallback_id=step_id)
        if existing.status.is_taken:
            raise StepUnavailableError(
                f"Step {step_id} is already {existing.status.value}",
                {"stepId": step_id, "status": existing.status.value, "worker": existing.worker_id},
            )
        return payload

    def _restore_step(self, step_file: Path, previous: dict[str, Any] | None) -> None:
        try:
            if previous is None:
                step_file.unlink(missing_ok=True)
            else:
                write_json_atomic(step_file, previous)
        except (OSError, StorageError) as error:
            logger.warning("Failed to restore step file %s: %s", step_file, error)

    def _resolve_owner(self, step: StepRecord, worker_id: str | None) -> str:
        if worker_id and step.worker_id != worker_id:
            raise OwnershipError(
                f"Worker ID mismatch. Step claimed by {step.worker_id}, provided {worker_id}",
                {"stepId": step.step_id, "stepWorkerId": step.worker_id, "workerId": worker_id},
            )
        owner = worker_id or step.worker_id
        if not owner:
            raise InvalidInputError(
                "Worker ID required (from claim or worker-id)",
                {"stepId": step.step_id},
            )
        return owner

    def _verify_lock(self, step_id: str, owner: str) -> Path:
        lock_file = self.layout.step_lock(step_id)
        try:
            payload = read_json(lock_file, max_bytes=self.max_lock_bytes)
        except FileNotFoundError as error:
            raise LockMissingError(
                "Lock file not found. Step may not have been properly claimed.",
                {"stepId": step_id},
            ) from error
        lock = LockRecord.from_payload(payload)
        if lock.worker_id and lock.worker_id != owner:
            raise OwnershipError(
                "Lock file workerId mismatch",
                {"stepId": step_id, "lockWorkerId": lock.worker_id, "workerId": owner},
            )
        return lock_file

    def _record_progress(self, worker_id: str, step_id: str) -> Path:
        progress_file = self.layout.progress_file(worker_id)
        payload = try_read_json(progress_file, max_bytes=self.max_step_bytes)
        progress = (
            WorkerProgress.from_payload(payload, worker_id=worker_id)
            if payload is not None
            else WorkerProgress(worker_id=worker_id)
        )
        progress.record(step_id)
        progress.last_updated = utc_now_iso()
        write_json_atomic(progress_file, progress.to_payload())
        return progress_file

    def _release_lock(self, lock_file: Path) -> bool:
        removed = try_unlink(lock_file)
        if not removed:
            logger.warning("Failed to remove lock %s", lock_file)
        return removed
