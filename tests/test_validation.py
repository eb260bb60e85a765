from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import allure
import pytest

from ralph_loop.coordination.errors import InvalidInputError
from ralph_loop.coordination.ledger import LedgerStore
from ralph_loop.coordination.paths import StateLayout
from ralph_loop.coordination.registry import StepRegistry
from ralph_loop.coordination.validation import ValidationRecorder, build_promise_pattern
from ralph_loop.coordination.verification import detect_test_command, run_verification

pytestmark = [
    allure.epic("Loop Coordination"),
    allure.feature("Monitor Validation"),
]


def _python_command(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


@pytest.fixture()
def recorder(tmp_path: Path, layout: StateLayout, ledger_store: LedgerStore) -> ValidationRecorder:
    return ValidationRecorder(layout, ledger_store, workdir=tmp_path, test_timeout_seconds=30)


def _complete_all(registry: StepRegistry, *step_ids: str, result: str | None = None) -> None:
    for step_id in step_ids:
        registry.claim(step_id, worker_id="w1")
        registry.complete(step_id, worker_id="w1", result=result)


def test_promise_pattern_wraps_plain_text_and_keeps_tagged_text() -> None:
    plain = build_promise_pattern("ALL DONE")
    tagged = build_promise_pattern("<promise>ALL DONE</promise>")

    assert plain is not None
    assert tagged is not None
    assert plain.search("text <PROMISE>all done</PROMISE> text")
    assert not plain.search("ALL DONE")
    assert tagged.search("<promise>all done</promise>")
    assert tagged.pattern.count("promise>") == 2
    assert build_promise_pattern(None) is None
    assert build_promise_pattern("") is None


def test_promise_pattern_escapes_regex_metacharacters() -> None:
    pattern = build_promise_pattern("done (v1.0)?")

    assert pattern is not None
    assert pattern.search("<promise>done (v1.0)?</promise>")
    assert not pattern.search("<promise>done v1x0</promise>")


def test_incomplete_steps_are_reported(
    layout: StateLayout,
    recorder: ValidationRecorder,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    _complete_all(registry, "a")

    record = recorder.validate(monitor_id="m1")

    assert record.all_steps_complete is False
    assert record.overall_complete is False
    assert record.tests_passing is None
    assert "1 step(s) not complete: b" in record.notes
    assert json.loads(layout.validation_file(1).read_text("utf-8"))["monitorId"] == "m1"
    ledger = initialized.load()
    assert ledger.monitors == ["m1"]
    assert ledger.last_validation is not None
    assert ledger.last_validation.overall_complete is False


def test_all_steps_complete_without_promise(
    recorder: ValidationRecorder,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    _complete_all(registry, "a", "b")

    record = recorder.validate()

    assert record.all_steps_complete is True
    assert record.overall_complete is True
    assert record.monitor_id.startswith("monitor-")


def test_empty_step_set_is_not_complete(
    recorder: ValidationRecorder,
    ledger_store: LedgerStore,
) -> None:
    ledger_store.initialize(task="nothing declared")

    record = recorder.validate()

    assert record.all_steps_complete is False
    assert record.overall_complete is False
    assert "No steps discovered" in record.notes


def test_promise_found_in_step_result(
    recorder: ValidationRecorder,
    registry: StepRegistry,
    ledger_store: LedgerStore,
) -> None:
    ledger_store.initialize(task="t", completion_promise="SHIPPED", step_ids=("a",))
    registry.claim("a", worker_id="w1")
    registry.complete("a", worker_id="w1", result="Finished. <promise>shipped</promise>")

    record = recorder.validate()

    assert record.promise_found is True
    assert record.overall_complete is True


def test_promise_found_in_text_artifact(
    layout: StateLayout,
    recorder: ValidationRecorder,
    registry: StepRegistry,
    ledger_store: LedgerStore,
) -> None:
    ledger_store.initialize(task="t", completion_promise="SHIPPED", step_ids=("a",))
    _complete_all(registry, "a")
    (layout.steps_dir / "a.md").write_text("notes\n<promise>SHIPPED</promise>\n", "utf-8")

    assert recorder.validate().promise_found is True


def test_missing_promise_blocks_completion(
    recorder: ValidationRecorder,
    registry: StepRegistry,
    ledger_store: LedgerStore,
) -> None:
    ledger_store.initialize(task="t", completion_promise="SHIPPED", step_ids=("a",))
    _complete_all(registry, "a", result="SHIPPED")

    record = recorder.validate()

    assert record.promise_found is False
    assert record.overall_complete is False
    assert 'Completion promise "SHIPPED" not found' in record.notes


def test_failing_verification_blocks_completion(
    recorder: ValidationRecorder,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    _complete_all(registry, "a", "b")

    record = recorder.validate(
        test_command=_python_command("import sys; print('2 failed'); sys.exit(1)"),
    )

    assert record.tests_passing is False
    assert record.overall_complete is False
    assert any(note.startswith("Tests failed") and "2 failed" in note for note in record.notes)


def test_passing_verification_allows_completion(
    recorder: ValidationRecorder,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    _complete_all(registry, "a", "b")

    record = recorder.validate(run_tests=True, test_command=_python_command("print('ok')"))

    assert record.tests_passing is True
    assert record.overall_complete is True


def test_undetected_framework_leaves_tests_unknown(
    recorder: ValidationRecorder,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    _complete_all(registry, "a", "b")

    record = recorder.validate(run_tests=True)

    assert record.tests_passing is None
    assert record.overall_complete is True
    assert "Test framework not detected or no tests found" in record.notes


def test_corrupted_step_file_is_noted_not_fatal(
    layout: StateLayout,
    recorder: ValidationRecorder,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    _complete_all(registry, "a")
    layout.step_file("b").write_text("{oops", "utf-8")

    record = recorder.validate()

    assert "Corrupted step file: b.json" in record.notes
    assert record.all_steps_complete is False


def test_corrupted_file_outranks_completed_ledger_entry(
    layout: StateLayout,
    recorder: ValidationRecorder,
    registry: StepRegistry,
    initialized: LedgerStore,
) -> None:
    _complete_all(registry, "a", "b")
    assert initialized.load().steps["b"].status.value == "complete"
    layout.step_file("b").write_text("{oops", "utf-8")

    record = recorder.validate()

    assert "Corrupted step file: b.json" in record.notes
    assert record.all_steps_complete is False
    assert record.overall_complete is False
    assert "1 step(s) not complete: b" in record.notes


def test_explicit_iteration_and_validation(
    layout: StateLayout,
    recorder: ValidationRecorder,
    initialized: LedgerStore,
) -> None:
    recorder.validate(iteration=4)

    assert layout.validation_file(4).is_file()
    with pytest.raises(InvalidInputError):
        recorder.validate(iteration=0)


def test_detect_test_command(tmp_path: Path) -> None:
    assert detect_test_command(tmp_path) is None

    (tmp_path / "go.mod").write_text("module x\n", "utf-8")
    assert detect_test_command(tmp_path) == "go test ./..."

    (tmp_path / "pyproject.toml").write_text("[project]\n", "utf-8")
    assert detect_test_command(tmp_path) == "pytest"

    (tmp_path / "package.json").write_text(json.dumps({"scripts": {"test": "jest"}}), "utf-8")
    assert detect_test_command(tmp_path) == "npm test"


def test_run_verification_truncates_output_and_survives_missing_binary(tmp_path: Path) -> None:
    noisy = run_verification(
        _python_command("print('x' * 5000)"),
        workdir=tmp_path,
        output_limit=100,
    )
    missing = run_verification("definitely-not-a-real-binary-42", workdir=tmp_path)
    slow = run_verification(
        _python_command("import time; time.sleep(5)"),
        workdir=tmp_path,
        timeout_seconds=1,
    )

    assert noisy.passing is True
    assert len(noisy.output) == 100
    assert missing.passing is False
    assert missing.exit_code is None
    assert slow.passing is False
    assert "Timed out" in slow.output
