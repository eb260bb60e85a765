"""Central ledger persistence with mutex-guarded read-modify-write."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from ralph_loop.coordination.errors import (
    InvalidInputError,
    IterationLimitError,
    StateExistsError,
    StateNotInitializedError,
)
from ralph_loop.coordination.models import (
    Ledger,
    LedgerStepEntry,
    StepRecord,
    StepStatus,
    utc_now_iso,
)
from ralph_loop.coordination.paths import StateLayout, assert_safe_step_id
from ralph_loop.coordination.storage import (
    DEFAULT_MAX_JSON_BYTES,
    mutex,
    read_json,
    write_json_atomic,
)

logger = logging.getLogger(__name__)


class LedgerStore:
    """Loads and mutates ``ralph-state.json``.

    Every mutation re-reads the on-disk document while holding the ledger
    mutex, so concurrent writers never overwrite each other with stale copies.
    """

    def __init__(
        self,
        layout: StateLayout,
        *,
        lock_timeout_seconds: float = 5.0,
        lock_retry_seconds: float = 0.025,
        max_bytes: int = DEFAULT_MAX_JSON_BYTES,
    ) -> None:
        self.layout = layout
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_retry_seconds = lock_retry_seconds
        self.max_bytes = max_bytes

    def exists(self) -> bool:
        return self.layout.state_file.exists()

    def load(self) -> Ledger:
        """Read the current ledger; corrupt content fails closed."""

        try:
            payload = read_json(self.layout.state_file, max_bytes=self.max_bytes)
        except FileNotFoundError as error:
            raise StateNotInitializedError(
                "State file not found. Run init first.",
                {"stateFile": str(self.layout.state_file)},
            ) from error
        return Ledger.from_payload(payload)

    @contextmanager
    def locked(self) -> Iterator[None]:
        with mutex(
            self.layout.state_lock,
            timeout_seconds=self.lock_timeout_seconds,
            retry_seconds=self.lock_retry_seconds,
        ):
            yield

    @contextmanager
    def mutate(self) -> Iterator[Ledger]:
        """Yield the freshly read ledger and persist it when the block exits cleanly."""

        with self.locked():
            ledger = self.load()
            yield ledger
            write_json_atomic(self.layout.state_file, ledger.to_payload())

    def initialize(
        self,
        *,
        task: str,
        max_iterations: int | None = None,
        completion_promise: str | None = None,
        step_ids: Iterable[str] = (),
    ) -> Ledger:
        """Create the directory skeleton and a fresh ledger, seeding pending steps."""

        task = task.strip()
        if not task:
            raise InvalidInputError("Task description is required")
        if max_iterations is not None and max_iterations < 0:
            raise InvalidInputError("max-iterations must be a non-negative integer")
        seeded = list(dict.fromkeys(assert_safe_step_id(step_id) for step_id in step_ids))

        for directory in (
            self.layout.root,
            self.layout.steps_dir,
            self.layout.progress_dir,
            self.layout.validation_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

        with self.locked():
            if self.exists():
                raise StateExistsError(
                    "State file already exists. Use cleanup or choose a different state-dir.",
                    {"stateFile": str(self.layout.state_file)},
                )
            ledger = Ledger(
                task=task,
                iteration=1,
                max_iterations=max_iterations or None,
                completion_promise=completion_promise or None,
                started_at=utc_now_iso(),
                steps={step_id: LedgerStepEntry() for step_id in seeded},
            )
            for step_id in seeded:
                step_file = self.layout.step_file(step_id)
                if not step_file.exists():
                    write_json_atomic(step_file, StepRecord(step_id=step_id).to_payload())
            write_json_atomic(self.layout.state_file, ledger.to_payload())

        logger.info("Initialized %s with %d seeded step(s)", self.layout.root, len(seeded))
        return ledger

    def advance_iteration(self) -> Ledger:
        """Increment the iteration counter unless the configured maximum is reached."""

        with self.mutate() as ledger:
            if ledger.max_iterations is not None and ledger.iteration >= ledger.max_iterations:
                raise IterationLimitError(
                    "Maximum iterations reached",
                    {"iteration": ledger.iteration, "maxIterations": ledger.max_iterations},
                )
            ledger.iteration += 1
        logger.info("Advanced %s to iteration %d", self.layout.root, ledger.iteration)
        return ledger

    def record_step(
        self,
        step_id: str,
        *,
        status: StepStatus,
        worker_id: str,
        claimed_at: str | None = None,
        completed_at: str | None = None,
    ) -> None:
        """Fold one step transition into the cached ``steps`` map and worker set."""

        with self.mutate() as ledger:
            entry = ledger.step_entry(step_id)
            entry.status = status
            if status == StepStatus.IN_PROGRESS:
                entry.worker_id = worker_id
            if claimed_at is not None:
                entry.claimed_at = claimed_at
            if completed_at is not None:
                entry.completed_at = completed_at
            ledger.register_worker(worker_id)
