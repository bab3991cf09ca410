"""Command line entry point: ``aild AGENT``."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click

from aild.common import settings
from aild.errors import AildError
from aild.session import SessionOutcome, run_session

logger = logging.getLogger(__name__)


def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    handlers: list[logging.Handler] = [
        logging.FileHandler(settings.LOG_FILE)
        if settings.LOG_FILE
        else logging.StreamHandler(sys.stderr)
    ]
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )


async def run(agent: str, workdir: Path) -> SessionOutcome:
    """Run a session, turning SIGINT/SIGTERM into a single cancellation."""
    loop = asyncio.get_running_loop()
    cancelled = asyncio.Event()

    def interrupt(signum: int) -> None:
        if not cancelled.is_set():
            logger.info(f"Received signal {signum}, cancelling session")
            cancelled.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, interrupt, signum)
    try:
        return await run_session(agent, workdir, cancelled)
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


@click.command()
@click.argument("agent")
def main(agent: str):
    """Run AGENT in a container mirroring the current directory.

    When the agent exits you are asked whether to copy the container's
    workspace back onto the current directory.
    """
    configure_logging()
    try:
        workdir = Path.cwd()
    except OSError as e:
        click.echo(f"error: failed to get current directory: {e}", err=True)
        sys.exit(1)

    try:
        outcome = asyncio.run(run(agent, workdir))
    except AildError as e:
        click.echo(f"error: {e}", err=True)
        sys.exit(1)
    logger.info(f"Session finished: {outcome.value}")


if __name__ == "__main__":
    main()
