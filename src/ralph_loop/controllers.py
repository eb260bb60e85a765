"""Controllers for coordination CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph_loop.config import Settings
from ralph_loop.coordination.aggregator import StateAggregator, render_summary_lines
from ralph_loop.coordination.archiver import Archiver
from ralph_loop.coordination.errors import InvalidInputError
from ralph_loop.coordination.ledger import LedgerStore
from ralph_loop.coordination.paths import StateLayout
from ralph_loop.coordination.registry import StepRegistry
from ralph_loop.coordination.validation import ValidationRecorder


@dataclass(slots=True)
class InitCommand:
    """CLI input for loop initialization."""

    state_dir: str | None
    task: str
    max_iterations: int | None
    completion_promise: str | None
    step_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class ClaimCommand:
    """CLI input for claiming one step."""

    state_dir: str | None
    step_id: str
    worker_id: str | None
    force_overwrite: bool = False


@dataclass(slots=True)
class CompleteCommand:
    """CLI input for completing one step."""

    state_dir: str | None
    step_id: str
    worker_id: str | None
    result: str | None = None
    output_file: str | None = None


@dataclass(slots=True)
class FailCommand:
    """CLI input for failing one step."""

    state_dir: str | None
    step_id: str
    worker_id: str | None
    reason: str | None = None


@dataclass(slots=True)
class ValidateCommand:
    """CLI input for one monitor validation pass."""

    state_dir: str | None
    iteration: int | None
    monitor_id: str | None
    run_tests: bool
    test_command: str | None
    completion_promise: str | None = None


@dataclass(slots=True)
class StateCommand:
    """CLI input for the aggregated state read."""

    state_dir: str | None
    output_format: str = "json"


@dataclass(slots=True)
class AdvanceCommand:
    state_dir: str | None


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for lock cleanup, archival and teardown."""

    state_dir: str | None
    archive: bool = False
    remove_all: bool = False
    force: bool = False


@dataclass(slots=True)
class _Workspace:
    settings: Settings
    workdir: Path
    layout: StateLayout
    ledger: LedgerStore


class CoordinationCliController:
    """Maps CLI commands onto coordination components and renders their output."""

    def __init__(self, workdir: Path | None = None) -> None:
        self._workdir = workdir

    def init(self, command: InitCommand) -> list[str]:
        workspace = self._workspace(command.state_dir)
        ledger = workspace.ledger.initialize(
            task=command.task,
            max_iterations=command.max_iterations,
            completion_promise=command.completion_promise,
            step_ids=command.step_ids,
        )
        layout = workspace.layout
        return _json_lines(
            {
                "stateDir": workspace.settings.state_dir,
                "stateDirAbs": str(layout.root),
                "stateFile": str(Path(workspace.settings.state_dir) / layout.state_file.name),
                "stateFileAbs": str(layout.state_file),
                "iteration": ledger.iteration,
                "maxIterations": ledger.max_iterations,
                "completionPromise": ledger.completion_promise,
                "steps": list(ledger.steps),
            },
        )

    def claim(self, command: ClaimCommand) -> list[str]:
        workspace = self._workspace(command.state_dir)
        workspace.ledger.load()
        claimed = self._registry(workspace).claim(
            command.step_id,
            worker_id=command.worker_id,
            force=command.force_overwrite,
        )
        return _json_lines(
            {
                "stepId": claimed.step_id,
                "workerId": claimed.worker_id,
                "stateDir": workspace.settings.state_dir,
                "stateDirAbs": str(workspace.layout.root),
                "lockFile": str(claimed.lock_file),
                "stepFile": str(claimed.step_file),
                "stepData": claimed.step.to_payload(),
            },
        )

    def complete(self, command: CompleteCommand) -> list[str]:
        workspace = self._workspace(command.state_dir)
        workspace.ledger.load()
        completed = self._registry(workspace).complete(
            command.step_id,
            worker_id=command.worker_id,
            result=command.result,
            output_file=command.output_file,
        )
        payload: dict[str, Any] = {
            "stepId": completed.step_id,
            "workerId": completed.worker_id,
            "status": completed.status.value,
            "completedAt": completed.finished_at,
        }
        if completed.already_complete:
            payload["note"] = "Step already complete"
        else:
            payload["lockRemoved"] = completed.lock_removed
            payload["progressFile"] = (
                str(completed.progress_file) if completed.progress_file is not None else None
            )
            if completed.output_file is not None:
                payload["outputFile"] = str(completed.output_file)
        return _json_lines(payload)

    def fail(self, command: FailCommand) -> list[str]:
        workspace = self._workspace(command.state_dir)
        workspace.ledger.load()
        failed = self._registry(workspace).fail(
            command.step_id,
            worker_id=command.worker_id,
            reason=command.reason,
        )
        return _json_lines(
            {
                "stepId": failed.step_id,
                "workerId": failed.worker_id,
                "status": failed.status.value,
                "failedAt": failed.finished_at,
                "lockRemoved": failed.lock_removed,
            },
        )

    def validate(self, command: ValidateCommand) -> list[str]:
        workspace = self._workspace(command.state_dir)
        recorder = ValidationRecorder(
            workspace.layout,
            workspace.ledger,
            workdir=workspace.workdir,
            test_timeout_seconds=workspace.settings.verification.timeout_seconds,
            output_limit=workspace.settings.verification.output_limit,
            max_step_bytes=workspace.settings.limits.max_step_bytes,
        )
        record = recorder.validate(
            iteration=command.iteration,
            monitor_id=command.monitor_id,
            run_tests=command.run_tests,
            test_command=command.test_command,
            completion_promise=command.completion_promise,
        )
        return _json_lines(record.to_payload())

    def state(self, command: StateCommand) -> list[str]:
        if command.output_format not in {"json", "summary"}:
            raise InvalidInputError('Format must be "json" or "summary"')
        workspace = self._workspace(command.state_dir)
        snapshot = StateAggregator(
            workspace.layout,
            workspace.ledger,
            max_step_bytes=workspace.settings.limits.max_step_bytes,
        ).snapshot()
        if command.output_format == "summary":
            return render_summary_lines(snapshot)
        return [json.dumps(snapshot.to_payload(), ensure_ascii=False, indent=2)]

    def advance(self, command: AdvanceCommand) -> list[str]:
        workspace = self._workspace(command.state_dir)
        ledger = workspace.ledger.advance_iteration()
        return _json_lines({"iteration": ledger.iteration, "maxIterations": ledger.max_iterations})

    def cleanup(self, command: CleanupCommand) -> list[str]:
        if command.remove_all and not command.force:
            raise InvalidInputError("Refusing --remove-all without --force")
        workspace = self._workspace(command.state_dir)
        archiver = Archiver(workspace.layout, workdir=workspace.workdir)

        payload: dict[str, Any] = {
            "locksRemoved": archiver.cleanup_locks(),
            "archived": None,
            "removed": None,
        }
        if command.archive:
            archived = archiver.archive()
            payload["archived"] = {
                "archived": archived.archived,
                "errors": archived.errors,
                "directory": str(archived.directory) if archived.directory else None,
            }
        if command.remove_all:
            removal = archiver.remove_all(confirm=command.force)
            payload["removed"] = {"removed": removal.removed}
            if removal.error is not None:
                payload["removed"]["error"] = removal.error
        return _json_lines(payload)

    def _workspace(self, state_dir: str | None) -> _Workspace:
        try:
            settings = Settings.from_env(state_dir=state_dir)
            settings.validate()
        except ValueError as error:
            raise InvalidInputError(str(error)) from error
        workdir = self._workdir or Path.cwd()
        layout = StateLayout.for_workdir(workdir, settings.state_dir)
        ledger = LedgerStore(
            layout,
            lock_timeout_seconds=settings.lock.timeout_seconds,
            lock_retry_seconds=settings.lock.retry_seconds,
            max_bytes=settings.limits.max_state_bytes,
        )
        return _Workspace(settings=settings, workdir=workdir, layout=layout, ledger=ledger)

    def _registry(self, workspace: _Workspace) -> StepRegistry:
        return StepRegistry(
            workspace.layout,
            workspace.ledger,
            workdir=workspace.workdir,
            max_step_bytes=workspace.settings.limits.max_step_bytes,
            max_lock_bytes=workspace.settings.limits.max_lock_bytes,
        )


def _json_lines(payload: dict[str, Any]) -> list[str]:
    return [json.dumps(payload, ensure_ascii=False)]
