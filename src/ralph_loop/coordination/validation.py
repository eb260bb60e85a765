"""Monitor-side completion checks and per-iteration validation records."""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path

from ralph_loop.coordination.errors import InvalidInputError
from ralph_loop.coordination.index import MAX_STEP_BYTES, IndexedStep, build_step_index
from ralph_loop.coordination.ledger import LedgerStore
from ralph_loop.coordination.models import ValidationRecord, utc_now_iso
from ralph_loop.coordination.paths import StateLayout
from ralph_loop.coordination.storage import write_json_atomic
from ralph_loop.coordination.verification import (
    DEFAULT_OUTPUT_LIMIT,
    detect_test_command,
    run_verification,
)

logger = logging.getLogger(__name__)

PROMISE_TAG = "<promise>"
TEXT_ARTIFACT_SUFFIXES = (".md", ".txt", ".log")


def build_promise_pattern(completion_promise: str | None) -> re.Pattern[str] | None:
    """Literal, case-insensitive marker pattern.

    Text that already carries a ``<promise>`` tag is matched as-is; anything
    else is wrapped as ``<promise>X</promise>``.
    """

    if not completion_promise:
        return None
    escaped = re.escape(completion_promise)
    if PROMISE_TAG in completion_promise.lower():
        return re.compile(escaped, re.IGNORECASE)
    return re.compile(f"<promise>{escaped}</promise>", re.IGNORECASE)


def search_completion_promise(
    layout: StateLayout,
    pattern: re.Pattern[str],
    steps: list[IndexedStep],
) -> bool:
    """Search step results, then text artifacts under steps/ and progress/."""

    if any(step.result is not None and pattern.search(step.result) for step in steps):
        return True
    for directory in (layout.steps_dir, layout.progress_dir):
        if not directory.is_dir():
            continue
        for artifact in sorted(directory.iterdir()):
            if artifact.suffix not in TEXT_ARTIFACT_SUFFIXES or not artifact.is_file():
                continue
            try:
                content = artifact.read_text("utf-8", errors="replace")
            except OSError:
                logger.debug("Skipping unreadable artifact %s", artifact, exc_info=True)
                continue
            if pattern.search(content):
                return True
    return False


class ValidationRecorder:
    """Runs one monitor validation pass and persists its record."""

    def __init__(
        self,
        layout: StateLayout,
        ledger: LedgerStore,
        *,
        workdir: Path | None = None,
        test_timeout_seconds: int = 600,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        max_step_bytes: int = MAX_STEP_BYTES,
    ) -> None:
        self.layout = layout
        self.ledger = ledger
        self.workdir = workdir or Path.cwd()
        self.test_timeout_seconds = test_timeout_seconds
        self.output_limit = output_limit
        self.max_step_bytes = max_step_bytes

    def validate(  # noqa: PLR0913
        self,
        *,
        iteration: int | None = None,
        monitor_id: str | None = None,
        run_tests: bool = False,
        test_command: str | None = None,
        completion_promise: str | None = None,
    ) -> ValidationRecord:
        if iteration is not None and iteration <= 0:
            raise InvalidInputError(
                "iteration must be a positive integer",
                {"iteration": iteration},
            )
        monitor_id = monitor_id or f"monitor-{int(time.time() * 1000)}"
        ledger = self.ledger.load()
        iteration = iteration or ledger.iteration
        promise = completion_promise or ledger.completion_promise

        index = build_step_index(self.layout, ledger, max_step_bytes=self.max_step_bytes)
        notes = list(index.notes)
        steps_complete = index.all_complete()
        tests_passing = self._run_tests(run_tests or bool(test_command), test_command, notes)

        pattern = build_promise_pattern(promise)
        promise_found = (
            search_completion_promise(self.layout, pattern, list(index.steps.values()))
            if pattern is not None
            else False
        )
        overall_complete = (
            steps_complete and tests_passing is not False and (promise_found if promise else True)
        )

        if not steps_complete:
            pending = index.incomplete_ids()
            if pending:
                notes.append(f"{len(pending)} step(s) not complete: {', '.join(pending)}")
            else:
                notes.append("No steps discovered")
        if promise and not promise_found:
            notes.append(f'Completion promise "{promise}" not found')

        record = ValidationRecord(
            iteration=iteration,
            monitor_id=monitor_id,
            all_steps_complete=steps_complete,
            tests_passing=tests_passing,
            promise_found=promise_found,
            overall_complete=overall_complete,
            notes=notes,
            timestamp=utc_now_iso(),
        )
        write_json_atomic(self.layout.validation_file(iteration), record.to_payload())

        with self.ledger.mutate() as latest:
            latest.register_monitor(monitor_id)
            latest.last_validation = record.summary()

        logger.info(
            "Validation iteration=%d monitor=%s overall_complete=%s",
            iteration,
            monitor_id,
            overall_complete,
        )
        return record

    def _run_tests(self, requested: bool, command: str | None, notes: list[str]) -> bool | None:
        if not requested:
            return None
        command = command or detect_test_command(self.workdir)
        if command is None:
            notes.append("Test framework not detected or no tests found")
            return None
        result = run_verification(
            command,
            workdir=self.workdir,
            timeout_seconds=self.test_timeout_seconds,
            output_limit=self.output_limit,
        )
        if not result.passing:
            logger.warning("Verification command failed: %s", command)
            notes.append(f"Tests failed ({command}): {result.output}")
        return result.passing
