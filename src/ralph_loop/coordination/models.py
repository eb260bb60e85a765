"""Typed records for the JSON documents kept in the coordination directory.

Documents on disk are loosely typed; every ``from_payload`` treats an absent
or mistyped field as its documented default instead of failing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now_iso() -> str:
    """Current UTC timestamp in ISO-8601 with millisecond precision."""

    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class StepStatus(str, Enum):
    """Step lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: object, default: StepStatus | None = None) -> StepStatus:
        try:
            return cls(value)
        except ValueError:
            return default or cls.PENDING

    @property
    def is_taken(self) -> bool:
        """Owned or finished: claiming again must be rejected."""

        return self in {StepStatus.IN_PROGRESS, StepStatus.COMPLETE}


def _opt_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _opt_bool(value: object) -> bool | None:
    return value if isinstance(value, bool) else None


def _opt_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


@dataclass(slots=True)
class StepRecord:
    """One step file (``steps/<id>.json``)."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    worker_id: str | None = None
    claimed_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    result: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, fallback_id: str) -> StepRecord:
        step_id = payload.get("stepId")
        return cls(
            step_id=step_id if isinstance(step_id, str) and step_id else fallback_id,
            status=StepStatus.parse(payload.get("status")),
            worker_id=_opt_str(payload.get("worker")),
            claimed_at=_opt_str(payload.get("claimedAt")),
            completed_at=_opt_str(payload.get("completedAt")),
            failed_at=_opt_str(payload.get("failedAt")),
            result=_opt_str(payload.get("result")),
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"stepId": self.step_id, "status": self.status.value}
        optional = {
            "worker": self.worker_id,
            "claimedAt": self.claimed_at,
            "completedAt": self.completed_at,
            "failedAt": self.failed_at,
            "result": self.result,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass(slots=True)
class LockRecord:
    """Step lock payload (``steps/<id>.lock``)."""

    worker_id: str | None
    claimed_at: str | None = None
    pid: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LockRecord:
        return cls(
            worker_id=_opt_str(payload.get("workerId")),
            claimed_at=_opt_str(payload.get("claimedAt")),
            pid=_opt_int(payload.get("pid")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {"workerId": self.worker_id, "claimedAt": self.claimed_at, "pid": self.pid}


@dataclass(slots=True)
class LedgerStepEntry:
    """Cached per-step status inside the ledger."""

    status: StepStatus = StepStatus.PENDING
    worker_id: str | None = None
    claimed_at: str | None = None
    completed_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: object) -> LedgerStepEntry:
        if not isinstance(payload, dict):
            return cls()
        known = {"status", "worker", "claimedAt", "completedAt"}
        return cls(
            status=StepStatus.parse(payload.get("status")),
            worker_id=_opt_str(payload.get("worker")),
            claimed_at=_opt_str(payload.get("claimedAt")),
            completed_at=_opt_str(payload.get("completedAt")),
            extra={key: value for key, value in payload.items() if key not in known},
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload["status"] = self.status.value
        optional = {
            "worker": self.worker_id,
            "claimedAt": self.claimed_at,
            "completedAt": self.completed_at,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass(slots=True)
class ValidationSummary:
    """Compact pointer to the latest validation outcome, stored in the ledger."""

    iteration: int
    overall_complete: bool
    all_steps_complete: bool
    tests_passing: bool | None
    promise_found: bool
    timestamp: str

    @classmethod
    def from_payload(cls, payload: object) -> ValidationSummary | None:
        if not isinstance(payload, dict):
            return None
        iteration = _opt_int(payload.get("iteration"))
        if iteration is None:
            return None
        return cls(
            iteration=iteration,
            overall_complete=payload.get("overallComplete") is True,
            all_steps_complete=payload.get("allStepsComplete") is True,
            tests_passing=_opt_bool(payload.get("testsPassing")),
            promise_found=payload.get("promiseFound") is True,
            timestamp=_opt_str(payload.get("timestamp")) or "",
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "overallComplete": self.overall_complete,
            "allStepsComplete": self.all_steps_complete,
            "testsPassing": self.tests_passing,
            "promiseFound": self.promise_found,
            "timestamp": self.timestamp,
        }


_LEDGER_KEYS = frozenset(
    {
        "task",
        "iteration",
        "maxIterations",
        "completionPromise",
        "startedAt",
        "steps",
        "workers",
        "monitors",
        "lastValidation",
    },
)


@dataclass(slots=True)
class Ledger:
    """Central loop document (``ralph-state.json``)."""

    task: str
    iteration: int = 1
    max_iterations: int | None = None
    completion_promise: str | None = None
    started_at: str = ""
    steps: dict[str, LedgerStepEntry] = field(default_factory=dict)
    workers: list[str] = field(default_factory=list)
    monitors: list[str] = field(default_factory=list)
    last_validation: ValidationSummary | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Ledger:
        raw_steps = payload.get("steps")
        steps = (
            {
                step_id: LedgerStepEntry.from_payload(entry)
                for step_id, entry in raw_steps.items()
                if isinstance(step_id, str)
            }
            if isinstance(raw_steps, dict)
            else {}
        )
        iteration = _opt_int(payload.get("iteration"))
        max_iterations = _opt_int(payload.get("maxIterations"))
        return cls(
            task=_opt_str(payload.get("task")) or "",
            iteration=iteration if iteration is not None and iteration > 0 else 1,
            max_iterations=max_iterations if max_iterations else None,
            completion_promise=_opt_str(payload.get("completionPromise")) or None,
            started_at=_opt_str(payload.get("startedAt")) or "",
            steps=steps,
            workers=_str_list(payload.get("workers")),
            monitors=_str_list(payload.get("monitors")),
            last_validation=ValidationSummary.from_payload(payload.get("lastValidation")),
            extra={key: value for key, value in payload.items() if key not in _LEDGER_KEYS},
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "task": self.task,
                "iteration": self.iteration,
                "maxIterations": self.max_iterations,
                "completionPromise": self.completion_promise,
                "startedAt": self.started_at,
                "steps": {step_id: entry.to_payload() for step_id, entry in self.steps.items()},
                "workers": list(self.workers),
                "monitors": list(self.monitors),
            },
        )
        if self.last_validation is not None:
            payload["lastValidation"] = self.last_validation.to_payload()
        return payload

    def step_entry(self, step_id: str) -> LedgerStepEntry:
        entry = self.steps.get(step_id)
        if entry is None:
            entry = LedgerStepEntry()
            self.steps[step_id] = entry
        return entry

    def register_worker(self, worker_id: str) -> None:
        if worker_id not in self.workers:
            self.workers.append(worker_id)

    def register_monitor(self, monitor_id: str) -> None:
        if monitor_id not in self.monitors:
            self.monitors.append(monitor_id)


@dataclass(slots=True)
class ValidationRecord:
    """Immutable per-iteration validation outcome (``validation/iteration-<N>.json``)."""

    iteration: int
    monitor_id: str
    all_steps_complete: bool
    tests_passing: bool | None
    promise_found: bool
    overall_complete: bool
    notes: list[str] = field(default_factory=list)
    timestamp: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, fallback_iteration: int) -> ValidationRecord:
        iteration = _opt_int(payload.get("iteration"))
        return cls(
            iteration=iteration if iteration is not None else fallback_iteration,
            monitor_id=_opt_str(payload.get("monitorId")) or "",
            all_steps_complete=payload.get("allStepsComplete") is True,
            tests_passing=_opt_bool(payload.get("testsPassing")),
            promise_found=payload.get("promiseFound") is True,
            overall_complete=payload.get("overallComplete") is True,
            notes=_str_list(payload.get("notes")),
            timestamp=_opt_str(payload.get("timestamp")) or "",
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "monitorId": self.monitor_id,
            "allStepsComplete": self.all_steps_complete,
            "testsPassing": self.tests_passing,
            "promiseFound": self.promise_found,
            "overallComplete": self.overall_complete,
            "notes": list(self.notes),
            "timestamp": self.timestamp,
        }

    def summary(self) -> ValidationSummary:
        return ValidationSummary(
            iteration=self.iteration,
            overall_complete=self.overall_complete,
            all_steps_complete=self.all_steps_complete,
            tests_passing=self.tests_passing,
            promise_found=self.promise_found,
            timestamp=self.timestamp,
        )


@dataclass(slots=True)
class WorkerProgress:
    """Per-worker progress record (``progress/worker-<encoded>.json``)."""

    worker_id: str
    status: str = "complete"
    steps_completed: list[str] = field(default_factory=list)
    last_updated: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, worker_id: str) -> WorkerProgress:
        return cls(
            worker_id=_opt_str(payload.get("workerId")) or worker_id,
            status=_opt_str(payload.get("status")) or "complete",
            steps_completed=_str_list(payload.get("stepsCompleted")),
            last_updated=_opt_str(payload.get("lastUpdated")) or "",
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "workerId": self.worker_id,
            "status": self.status,
            "stepsCompleted": list(self.steps_completed),
            "lastUpdated": self.last_updated,
        }

    def record(self, step_id: str) -> None:
        if step_id not in self.steps_completed:
            self.steps_completed.append(step_id)
