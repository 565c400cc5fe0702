"""CLI entrypoint for create3-race."""

import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from create3_race import __version__
from create3_race.errors import PersistenceError, ValidationError
from create3_race.jobs.controllers import (
    JobCommandResult,
    JobListCommand,
    JobsCliController,
    JobShowCommand,
    JobSubmitCommand,
)
from create3_race.race.cancellation import ShutdownToken

click.rich_click.USE_MARKDOWN = True
logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="create3-race")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def create3_race(log_level: str) -> None:
    """Redundant CREATE3 salt search."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@create3_race.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", required=True, help="Owner identity of the job.")
@click.option("--pattern", required=True, help="Address pattern to search for.")
@click.option("--deployer", required=True, help="Deployer address used by CREATE3.")
@click.option(
    "--replicas",
    type=click.IntRange(min=1, max=32),
    default=None,
    help="Override the replication factor for this job.",
)
@click.option(
    "--timeout",
    "race_timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Fail the job if no worker succeeds within this many seconds.",
)
def submit(  # noqa: PLR0913
    db_path: Path | None,
    owner: str,
    pattern: str,
    deployer: str,
    replicas: int | None,
    race_timeout_seconds: float | None,
) -> None:
    """Create a job, race redundant workers for it and print the settled job."""

    token = ShutdownToken()
    controller = JobsCliController(token=token)
    with _shutdown_on_signals(token):
        result = _run(
            lambda: controller.submit(
                JobSubmitCommand(
                    db_path=db_path,
                    owner=owner,
                    pattern=pattern,
                    deployer=deployer,
                    replication_factor=replicas,
                    race_timeout_seconds=race_timeout_seconds,
                ),
            ),
        )
    _emit(result, failure_message="Job did not finish in state done.")


@create3_race.command("show")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
)
def show(job_id: str, db_path: Path | None, output_format: str) -> None:
    """Show one job with its transition history."""

    result = _run(
        lambda: JobsCliController().show(
            JobShowCommand(db_path=db_path, job_id=job_id, output_format=output_format.lower()),
        ),
    )
    _emit(result, failure_message="Job lookup failed.")


@create3_race.command("list")
@click.argument("owner")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
)
def list_jobs(owner: str, db_path: Path | None, output_format: str) -> None:
    """List jobs of one owner."""

    result = _run(
        lambda: JobsCliController().list_jobs(
            JobListCommand(db_path=db_path, owner=owner, output_format=output_format.lower()),
        ),
    )
    _emit(result, failure_message="Job listing failed.")


def _run(action: Callable[[], JobCommandResult]) -> JobCommandResult:
    try:
        return action()
    except ValidationError as error:
        raise click.UsageError(str(error)) from error
    except (PersistenceError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit(result: JobCommandResult, *, failure_message: str) -> None:
    for line in result.lines:
        click.echo(line)
    if not result.success:
        raise click.ClickException(failure_message)


@contextmanager
def _shutdown_on_signals(token: ShutdownToken) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        if token.request(f"signal {name}"):
            logger.warning("Received %s; shutting down races", name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


if __name__ == "__main__":  # pragma: no cover
    create3_race()
