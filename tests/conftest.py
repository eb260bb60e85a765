"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralph_loop.coordination.ledger import LedgerStore
from ralph_loop.coordination.paths import StateLayout
from ralph_loop.coordination.registry import StepRegistry


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop RALPH_* overrides inherited from the developer shell."""
    for name in (
        "RALPH_STATE_DIR",
        "RALPH_LOCK_TIMEOUT_SECONDS",
        "RALPH_LOCK_RETRY_SECONDS",
        "RALPH_MAX_STATE_BYTES",
        "RALPH_MAX_STEP_BYTES",
        "RALPH_TEST_TIMEOUT_SECONDS",
        "RALPH_TEST_OUTPUT_LIMIT",
        "RALPH_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def layout(tmp_path: Path) -> StateLayout:
    return StateLayout.for_workdir(tmp_path, ".ralph")


@pytest.fixture()
def ledger_store(layout: StateLayout) -> LedgerStore:
    return LedgerStore(layout, lock_timeout_seconds=5.0, lock_retry_seconds=0.005)


@pytest.fixture()
def registry(tmp_path: Path, layout: StateLayout, ledger_store: LedgerStore) -> StepRegistry:
    return StepRegistry(layout, ledger_store, workdir=tmp_path)


@pytest.fixture()
def initialized(ledger_store: LedgerStore) -> LedgerStore:
    """Ledger initialized with two declared steps."""
    ledger_store.initialize(task="Build X", step_ids=("a", "b"))
    return ledger_store
