from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from ralph_loop.coordination.archiver import Archiver
from ralph_loop.coordination.errors import InvalidInputError
from ralph_loop.coordination.ledger import LedgerStore
from ralph_loop.coordination.paths import StateLayout
from ralph_loop.coordination.registry import StepRegistry

pytestmark = [
    allure.epic("Loop Coordination"),
    allure.feature("Maintenance"),
]


def test_cleanup_locks_removes_step_and_ledger_locks(
    tmp_path: Path,
    layout: StateLayout,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    registry.claim("a", worker_id="w1")
    registry.claim("b", worker_id="w2")
    layout.state_lock.write_text("{}", "utf-8")

    removed = Archiver(layout, workdir=tmp_path).cleanup_locks()

    assert removed == 3
    assert not list(layout.steps_dir.glob("*.lock"))
    assert not layout.state_lock.exists()
    assert json.loads(layout.step_file("a").read_text("utf-8"))["status"] == "in-progress"


def test_cleanup_locks_without_state_dir(tmp_path: Path, layout: StateLayout) -> None:
    assert Archiver(layout, workdir=tmp_path).cleanup_locks() == 0


def test_archive_copies_state_files(
    tmp_path: Path,
    layout: StateLayout,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    registry.claim("a", worker_id="w1")
    registry.complete("a", worker_id="w1")
    (layout.steps_dir / "a.md").write_text("notes", "utf-8")
    (layout.steps_dir / "scratch.bin").write_bytes(b"\0")

    result = Archiver(layout, workdir=tmp_path).archive()

    assert result.errors == 0
    assert result.directory is not None
    assert result.directory.parent == layout.archive_dir
    names = sorted(path.name for path in result.directory.iterdir())
    assert "steps-a.json" in names
    assert "steps-a.md" in names
    assert "steps-b.json" in names
    assert "ralph-state.json" in names
    assert any(name.startswith("progress-worker-") for name in names)
    assert not any(name.endswith(".lock") or name.endswith(".bin") for name in names)
    assert result.archived == len(names)
    assert layout.step_file("a").exists()


def test_remove_all_requires_confirmation(tmp_path: Path, layout: StateLayout) -> None:
    layout.root.mkdir(parents=True)

    with pytest.raises(InvalidInputError):
        Archiver(layout, workdir=tmp_path).remove_all(confirm=False)
    assert layout.root.exists()


def test_remove_all_deletes_state_dir(
    tmp_path: Path,
    layout: StateLayout,
    initialized: LedgerStore,
) -> None:
    result = Archiver(layout, workdir=tmp_path).remove_all(confirm=True)

    assert result.removed is True
    assert not layout.root.exists()
    assert tmp_path.exists()


def test_remove_all_reports_missing_dir(tmp_path: Path, layout: StateLayout) -> None:
    result = Archiver(layout, workdir=tmp_path).remove_all(confirm=True)

    assert result.removed is False
    assert result.error == "State directory does not exist"


def test_remove_all_refuses_working_directory(tmp_path: Path) -> None:
    workdir = tmp_path / "project"
    workdir.mkdir()

    result = Archiver(StateLayout(root=tmp_path), workdir=workdir).remove_all(confirm=True)

    assert result.removed is False
    assert workdir.exists()
