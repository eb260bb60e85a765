"""Read path: one consistent snapshot of ledger, step files and validation records."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from ralph_loop.coordination.index import MAX_STEP_BYTES, build_step_index
from ralph_loop.coordination.ledger import LedgerStore
from ralph_loop.coordination.models import StepStatus, ValidationRecord
from ralph_loop.coordination.paths import StateLayout
from ralph_loop.coordination.storage import try_read_json

VALIDATION_FILE_RE = re.compile(r"^iteration-(\d+)\.json$")


@dataclass(slots=True)
class StateSnapshot:
    """Aggregated loop state as reported to participants."""

    iteration: int
    task: str
    max_iterations: int | None
    completion_promise: str | None
    started_at: str
    total_steps: int
    completed_step_ids: list[str] = field(default_factory=list)
    pending_step_ids: list[str] = field(default_factory=list)
    in_progress_step_ids: list[str] = field(default_factory=list)
    failed_step_ids: list[str] = field(default_factory=list)
    last_validation: ValidationRecord | None = None
    is_complete: bool = False
    can_continue: bool = True
    workers: list[str] = field(default_factory=list)
    monitors: list[str] = field(default_factory=list)

    @property
    def status_label(self) -> str:
        if self.is_complete:
            return "COMPLETE"
        return "CONTINUE" if self.can_continue else "STOPPED"

    def to_payload(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "task": self.task,
            "maxIterations": self.max_iterations,
            "completionPromise": self.completion_promise,
            "startedAt": self.started_at,
            "totalSteps": self.total_steps,
            "completedSteps": len(self.completed_step_ids),
            "completedStepIds": list(self.completed_step_ids),
            "pendingSteps": list(self.pending_step_ids),
            "inProgressSteps": list(self.in_progress_step_ids),
            "failedSteps": list(self.failed_step_ids),
            "lastValidation": (
                self.last_validation.to_payload() if self.last_validation is not None else None
            ),
            "isComplete": self.is_complete,
            "canContinue": self.can_continue,
            "workers": list(self.workers),
            "monitors": list(self.monitors),
        }


class StateAggregator:
    """Builds :class:`StateSnapshot` without touching any file."""

    def __init__(
        self,
        layout: StateLayout,
        ledger: LedgerStore,
        *,
        max_step_bytes: int = MAX_STEP_BYTES,
    ) -> None:
        self.layout = layout
        self.ledger = ledger
        self.max_step_bytes = max_step_bytes

    def snapshot(self) -> StateSnapshot:
        ledger = self.ledger.load()
        index = build_step_index(self.layout, ledger, max_step_bytes=self.max_step_bytes)
        latest = self.latest_validation(ledger.iteration)
        is_complete = latest.overall_complete if latest is not None else False
        can_continue = not is_complete and (
            ledger.max_iterations is None or ledger.iteration < ledger.max_iterations
        )
        return StateSnapshot(
            iteration=ledger.iteration,
            task=ledger.task,
            max_iterations=ledger.max_iterations,
            completion_promise=ledger.completion_promise,
            started_at=ledger.started_at,
            total_steps=len(index.steps),
            completed_step_ids=index.ids_with_status(StepStatus.COMPLETE),
            pending_step_ids=index.ids_with_status(StepStatus.PENDING),
            in_progress_step_ids=index.ids_with_status(StepStatus.IN_PROGRESS),
            failed_step_ids=index.ids_with_status(StepStatus.FAILED),
            last_validation=latest,
            is_complete=is_complete,
            can_continue=can_continue,
            workers=list(ledger.workers),
            monitors=list(ledger.monitors),
        )

    def latest_validation(self, iteration: int) -> ValidationRecord | None:
        """Record for ``iteration`` if readable, else the numerically greatest readable one."""

        current = try_read_json(self.layout.validation_file(iteration))
        if current is not None:
            return ValidationRecord.from_payload(current, fallback_iteration=iteration)
        if not self.layout.validation_dir.is_dir():
            return None

        candidates: list[tuple[int, str]] = []
        for path in self.layout.validation_dir.iterdir():
            match = VALIDATION_FILE_RE.match(path.name)
            if match:
                candidates.append((int(match.group(1)), path.name))
        for number, name in sorted(candidates, reverse=True):
            payload = try_read_json(self.layout.validation_dir / name)
            if payload is not None:
                return ValidationRecord.from_payload(payload, fallback_iteration=number)
        return None


def render_summary_lines(snapshot: StateSnapshot) -> list[str]:
    """Human-readable summary for terminals."""

    lines = [
        f"Ralph Loop State - Iteration {snapshot.iteration}",
        f"Task: {snapshot.task}",
        f"Started: {snapshot.started_at}",
        "",
        f"Steps: {len(snapshot.completed_step_ids)}/{snapshot.total_steps} complete",
    ]
    if snapshot.pending_step_ids:
        lines.append(f"Pending: {', '.join(snapshot.pending_step_ids)}")
    if snapshot.in_progress_step_ids:
        lines.append(f"In Progress: {', '.join(snapshot.in_progress_step_ids)}")
    if snapshot.failed_step_ids:
        lines.append(f"Failed: {', '.join(snapshot.failed_step_ids)}")

    validation = snapshot.last_validation
    if validation is not None:
        lines.extend(["", "Last Validation:"])
        lines.append(f"  Iteration: {validation.iteration}")
        lines.append(f"  All Steps Complete: {validation.all_steps_complete}")
        if validation.tests_passing is not None:
            lines.append(f"  Tests Passing: {validation.tests_passing}")
        lines.append(f"  Promise Found: {validation.promise_found}")
        lines.append(f"  Overall Complete: {validation.overall_complete}")
        if validation.notes:
            lines.append(f"  Notes: {'; '.join(validation.notes)}")

    lines.extend(["", f"Status: {snapshot.status_label}"])
    if snapshot.max_iterations:
        lines.append(f"Max Iterations: {snapshot.max_iterations}")
    return lines
