"""Reconciliation of ledger-declared steps with on-disk step files."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ralph_loop.coordination.models import Ledger, StepRecord, StepStatus
from ralph_loop.coordination.paths import StateLayout
from ralph_loop.coordination.storage import try_read_json

logger = logging.getLogger(__name__)

MAX_STEP_BYTES = 512 * 1024


@dataclass(slots=True)
class IndexedStep:
    """One step as seen after the overlay; ``source`` tells which side won."""

    step_id: str
    status: StepStatus
    worker_id: str | None = None
    result: str | None = None
    source: str = "state"


@dataclass(slots=True)
class StepIndex:
    steps: dict[str, IndexedStep] = field(default_factory=dict)
    expected_ids: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def ids_with_status(self, status: StepStatus) -> list[str]:
        return [step.step_id for step in self.steps.values() if step.status == status]

    def all_complete(self) -> bool:
        """Declared steps must all be complete.

        With nothing declared, at least one step file must exist and every
        discovered step must be complete; an empty set is not complete.
        """

        if self.expected_ids:
            return all(
                step_id in self.steps and self.steps[step_id].status == StepStatus.COMPLETE
                for step_id in self.expected_ids
            )
        return bool(self.steps) and all(
            step.status == StepStatus.COMPLETE for step in self.steps.values()
        )

    def incomplete_ids(self) -> list[str]:
        incomplete = [
            step.step_id for step in self.steps.values() if step.status != StepStatus.COMPLETE
        ]
        incomplete.extend(step_id for step_id in self.expected_ids if step_id not in self.steps)
        return incomplete


def build_step_index(
    layout: StateLayout,
    ledger: Ledger,
    *,
    max_step_bytes: int = MAX_STEP_BYTES,
) -> StepIndex:
    """Seed from the ledger's cached steps, then overlay every readable step file.

    File status, owner and result win over the ledger. Unreadable files are
    excluded, together with any cached ledger entry for the same id, and
    reported in ``notes`` instead of aborting the scan.
    """

    index = StepIndex(expected_ids=list(ledger.steps))
    for step_id, entry in ledger.steps.items():
        index.steps[step_id] = IndexedStep(
            step_id=step_id,
            status=entry.status,
            worker_id=entry.worker_id,
        )

    if not layout.steps_dir.is_dir():
        return index

    for step_file in sorted(layout.steps_dir.glob("*.json")):
        payload = try_read_json(step_file, max_bytes=max_step_bytes)
        if payload is None:
            logger.warning("Corrupted step file: %s", step_file)
            index.notes.append(f"Corrupted step file: {step_file.name}")
            index.steps.pop(step_file.stem, None)
            continue
        record = StepRecord.from_payload(payload, fallback_id=step_file.stem)
        current = index.steps.get(record.step_id)
        if current is None:
            current = IndexedStep(step_id=record.step_id, status=StepStatus.PENDING)
        if "status" in payload:
            current.status = StepStatus.parse(payload["status"], default=current.status)
        current.worker_id = record.worker_id or current.worker_id
        if record.result is not None:
            current.result = record.result
        current.source = "file"
        index.steps[record.step_id] = current
    return index
