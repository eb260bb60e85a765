"""CLI entrypoint for ralph-loop."""

import json
import logging
import sys
from collections.abc import Callable

import rich_click as click

from ralph_loop import __version__
from ralph_loop.config import Settings
from ralph_loop.controllers import (
    AdvanceCommand,
    ClaimCommand,
    CleanupCommand,
    CompleteCommand,
    CoordinationCliController,
    FailCommand,
    InitCommand,
    StateCommand,
    ValidateCommand,
)
from ralph_loop.coordination.errors import CoordinationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinationCliController()

STATE_DIR_HELP = "Coordination directory relative to the working directory (default: .ralph)."


@click.group()
@click.version_option(version=__version__, prog_name="ralph-loop")
def ralph_loop() -> None:
    """File-based coordination for iterative multi-agent loops."""

    _configure_logging()


@ralph_loop.command("init")
@click.argument("task_words", nargs=-1, required=True, metavar="TASK...")
@click.option("--state-dir", default=None, help=STATE_DIR_HELP)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Iteration limit; 0 or omitted means unlimited.",
)
@click.option("--completion-promise", default=None, help="Text that marks the task as done.")
@click.option(
    "--step",
    "step_ids",
    multiple=True,
    help="Step id to seed as pending. Can be repeated.",
)
def init_loop(
    task_words: tuple[str, ...],
    state_dir: str | None,
    max_iterations: int | None,
    completion_promise: str | None,
    step_ids: tuple[str, ...],
) -> None:
    """Create the coordination directory and a fresh ledger for TASK."""

    _run(
        lambda: CONTROLLER.init(
            InitCommand(
                state_dir=state_dir,
                task=" ".join(task_words),
                max_iterations=max_iterations,
                completion_promise=completion_promise,
                step_ids=step_ids,
            ),
        ),
    )


@ralph_loop.command("claim")
@click.argument("step_id")
@click.option("--state-dir", default=None, help=STATE_DIR_HELP)
@click.option("--worker-id", default=None, help="Worker id; generated when omitted.")
@click.option(
    "--force-overwrite",
    is_flag=True,
    default=False,
    help="Reset a corrupted step file instead of refusing the claim.",
)
def claim_step(
    step_id: str,
    state_dir: str | None,
    worker_id: str | None,
    force_overwrite: bool,
) -> None:
    """Take exclusive ownership of one step."""

    _run(
        lambda: CONTROLLER.claim(
            ClaimCommand(
                state_dir=state_dir,
                step_id=step_id,
                worker_id=worker_id,
                force_overwrite=force_overwrite,
            ),
        ),
    )


@ralph_loop.command("complete")
@click.argument("step_id")
@click.option("--state-dir", default=None, help=STATE_DIR_HELP)
@click.option("--worker-id", default=None, help="Owning worker id; read from the step if omitted.")
@click.option("--result", default=None, help="Result text stored with the step.")
@click.option(
    "--output-file",
    default=None,
    help="Relative path that receives the result text.",
)
def complete_step(
    step_id: str,
    state_dir: str | None,
    worker_id: str | None,
    result: str | None,
    output_file: str | None,
) -> None:
    """Mark an owned step complete and release its lock."""

    _run(
        lambda: CONTROLLER.complete(
            CompleteCommand(
                state_dir=state_dir,
                step_id=step_id,
                worker_id=worker_id,
                result=result,
                output_file=output_file,
            ),
        ),
    )


@ralph_loop.command("fail")
@click.argument("step_id")
@click.option("--state-dir", default=None, help=STATE_DIR_HELP)
@click.option("--worker-id", default=None, help="Owning worker id; read from the step if omitted.")
@click.option("--reason", default=None, help="Failure reason stored as the step result.")
def fail_step(
    step_id: str,
    state_dir: str | None,
    worker_id: str | None,
    reason: str | None,
) -> None:
    """Mark an owned step failed so it can be claimed again."""

    _run(
        lambda: CONTROLLER.fail(
            FailCommand(
                state_dir=state_dir,
                step_id=step_id,
                worker_id=worker_id,
                reason=reason,
            ),
        ),
    )


@ralph_loop.command("validate")
@click.option("--state-dir", default=None, help=STATE_DIR_HELP)
@click.option(
    "--iteration",
    type=int,
    default=None,
    help="Iteration to record; defaults to the ledger's current iteration.",
)
@click.option("--monitor-id", default=None, help="Monitor id; generated when omitted.")
@click.option(
    "--run-tests",
    is_flag=True,
    default=False,
    help="Run the detected (or given) verification command.",
)
@click.option(
    "--test-command",
    default=None,
    help=(
        "Explicit verification command. It is split into arguments and run without a shell,"
        " so compound commands such as `a && b` need a wrapper script."
    ),
)
@click.option(
    "--completion-promise",
    default=None,
    help="Override the ledger's completion promise for this pass.",
)
def validate_loop(  # noqa: PLR0913
    state_dir: str | None,
    iteration: int | None,
    monitor_id: str | None,
    run_tests: bool,
    test_command: str | None,
    completion_promise: str | None,
) -> None:
    """Check completion for one iteration and persist the validation record."""

    _run(
        lambda: CONTROLLER.validate(
            ValidateCommand(
                state_dir=state_dir,
                iteration=iteration,
                monitor_id=monitor_id,
                run_tests=run_tests,
                test_command=test_command,
                completion_promise=completion_promise,
            ),
        ),
    )


@ralph_loop.command("state")
@click.option("--state-dir", default=None, help=STATE_DIR_HELP)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "summary"]),
    default="json",
    show_default=True,
    help="Output format.",
)
def show_state(state_dir: str | None, output_format: str) -> None:
    """Print the aggregated loop state."""

    _run(lambda: CONTROLLER.state(StateCommand(state_dir=state_dir, output_format=output_format)))


@ralph_loop.command("next-iteration")
@click.option("--state-dir", default=None, help=STATE_DIR_HELP)
def next_iteration(state_dir: str | None) -> None:
    """Advance the iteration counter, honoring the iteration limit."""

    _run(lambda: CONTROLLER.advance(AdvanceCommand(state_dir=state_dir)))


@ralph_loop.command("cleanup")
@click.option("--state-dir", default=None, help=STATE_DIR_HELP)
@click.option("--archive", is_flag=True, default=False, help="Copy state files into archive/.")
@click.option(
    "--remove-all",
    is_flag=True,
    default=False,
    help="Delete the whole coordination directory (requires --force).",
)
@click.option("--force", is_flag=True, default=False, help="Confirm --remove-all.")
def cleanup(state_dir: str | None, archive: bool, remove_all: bool, force: bool) -> None:
    """Remove all step and ledger locks, then optionally archive or delete state.

    Locks are always removed, also when only --archive is given.
    """

    _run(
        lambda: CONTROLLER.cleanup(
            CleanupCommand(
                state_dir=state_dir,
                archive=archive,
                remove_all=remove_all,
                force=force,
            ),
        ),
    )


def _configure_logging() -> None:
    try:
        level_name = Settings.from_env().log_level
    except ValueError:
        level_name = "WARNING"
    level = logging.getLevelName(level_name)
    logging.basicConfig(
        stream=sys.stderr,
        level=level if isinstance(level, int) else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except CoordinationError as error:
        click.echo(json.dumps(error.to_payload(), ensure_ascii=False), err=True)
        click.get_current_context().exit(1)
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_loop()
