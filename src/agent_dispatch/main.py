"""CLI entrypoint for agent-dispatch."""

import logging
import sys
from pathlib import Path

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.orchestrator.controllers import WorkerCliController, WorkerHandleCommand
from agent_dispatch.orchestrator.preflight import PreflightError

click.rich_click.USE_MARKDOWN = True
WORKER_CONTROLLER = WorkerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level for worker diagnostics (written to stderr).",
)
def agent_dispatch(log_level: str) -> None:
    """Agent task dispatch CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@agent_dispatch.group()
def worker() -> None:
    """Worker commands."""


@worker.command("handle")
@click.option(
    "--envelope-file",
    type=click.Path(path_type=Path, dir_okay=False, allow_dash=True),
    default="-",
    show_default=True,
    help="Delivery envelope JSON. Use - to read from stdin.",
)
@click.option(
    "--skip-preflight",
    is_flag=True,
    default=False,
    help="Do not run the agent binary `--version` cold-start check.",
)
def worker_handle(envelope_file: Path, skip_preflight: bool) -> None:
    """Process exactly one delivered message.

    Exit codes: **0** done (acknowledge), **65** terminal failure (dead-letter),
    **75** retryable failure (leave for redelivery).
    """

    if str(envelope_file) == "-":
        envelope = click.get_text_stream("stdin").read()
    else:
        envelope = envelope_file.read_text("utf-8")

    try:
        result = WORKER_CONTROLLER.handle(
            WorkerHandleCommand(envelope=envelope, skip_preflight=skip_preflight),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code != 0:
        click.get_current_context().exit(result.exit_code)


@worker.command("preflight")
def worker_preflight() -> None:
    """Check that the agent binary is installed and answers `--version`."""

    try:
        _emit_lines(WORKER_CONTROLLER.preflight())
    except PreflightError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
