"""Session orchestration: build, run interactively, capture, apply.

A session mirrors the working directory into a fresh container, runs the
agent against the real terminal and, once the user confirms, writes the
container's workspace back onto the local tree. The container is always
released, whatever step fails.
"""

import asyncio
import enum
import logging
from contextlib import asynccontextmanager
from operator import methodcaller
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import click

from aild.archive import apply_archive
from aild.common import settings
from aild.console import ask_yes_no
from aild.engine import BuildDefinition, BuildEngine, Environment, InitProcess, connect
from aild.errors import AildError, SessionCancelled
from aild.extract import extract_changes
from aild.relay import run_interactive_shell

logger = logging.getLogger(__name__)

T = TypeVar("T")

APPLY_PROMPT = "Do you want to apply the changes made in the container locally?"

# How long to wait for the keep-alive to exit once stopped, before release
# removes the container regardless
KEEPALIVE_STOP_TIMEOUT = 10.0


class SessionOutcome(enum.Enum):
    APPLIED = "applied"
    DISCARDED = "discarded"


async def join_fail_fast(*aws: Awaitable[Any]) -> list[Any]:
    """Run awaitables concurrently; the first failure cancels the rest and is raised."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if not task.cancelled() and (error := task.exception()) is not None:
            raise error
    return [task.result() for task in tasks]


async def until_cancelled(aw: Awaitable[T], cancelled: asyncio.Event) -> T:
    """Await ``aw`` unless ``cancelled`` is set first, in which case it is cancelled."""
    work = asyncio.ensure_future(aw)
    interrupted = asyncio.ensure_future(cancelled.wait())
    try:
        await asyncio.wait({work, interrupted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        interrupted.cancel()
        if not work.done():
            work.cancel()
            try:
                await work
            except asyncio.CancelledError:
                pass

    if work.cancelled():
        raise SessionCancelled("session interrupted")
    return work.result()


async def run_or_undo(
    undo: Callable[[T], object], func: Callable[..., T], *args: Any
) -> T:
    """Run ``func`` in a worker thread, undoing its result if interrupted.

    A worker thread can't be stopped, so on cancellation the call is allowed
    to finish and whatever it produced is handed to ``undo`` before the
    cancellation propagates.
    """
    running = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(running)
    except asyncio.CancelledError:
        try:
            result = await asyncio.shield(running)
        except AildError as e:
            logger.debug(f"Interrupted step failed: {e}")
        else:
            await asyncio.to_thread(undo, result)
        raise


def describe_progress(event: dict[str, Any]) -> str:
    for key in ("stream", "status", "error"):
        if value := event.get(key):
            return str(value).strip()
    return repr(event)


async def drain_progress(progress: "asyncio.Queue[dict[str, Any] | None]") -> None:
    """Consume build progress until the build closes the queue with None."""
    while (event := await progress.get()) is not None:
        logger.debug(f"build: {describe_progress(event)}")


@asynccontextmanager
async def keep_alive(environment: Environment) -> AsyncIterator[InitProcess]:
    """Run the environment's init process for the duration of the block.

    On exit the init process is stopped and its exit awaited, so nothing is
    left running inside the container once the block is left.
    """
    init = await asyncio.to_thread(environment.start_init)
    exited = asyncio.ensure_future(asyncio.to_thread(init.wait))
    try:
        yield init
    finally:
        await asyncio.to_thread(init.stop)
        done, _ = await asyncio.wait({exited}, timeout=KEEPALIVE_STOP_TIMEOUT)
        if done:
            logger.debug(f"Keep-alive exited with status {exited.result()}")
        else:
            logger.warning("Keep-alive did not exit in time; removing container anyway")


async def build_and_run(
    engine: BuildEngine,
    agent: str,
    workdir: Path,
    progress: "asyncio.Queue[dict[str, Any] | None]",
) -> bytes | None:
    """Build the workspace, run the agent and return the captured changes.

    Returns None when the user declines to apply the changes.
    """
    loop = asyncio.get_running_loop()

    def report(event: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(progress.put_nowait, event)

    definition = BuildDefinition()
    try:
        image = await run_or_undo(
            engine.remove_image,
            engine.solve,
            definition,
            {settings.CONTEXT_MOUNT: workdir},
            report,
        )
    finally:
        progress.put_nowait(None)

    environment = await run_or_undo(
        methodcaller("release"),
        engine.new_container,
        image,
        settings.KEEPALIVE_COMMAND,
        {"PATH": settings.CONTAINER_PATH},
        "/",
    )
    try:
        async with keep_alive(environment):
            await run_interactive_shell(environment, agent)

            click.echo()
            if not await ask_yes_no(APPLY_PROMPT):
                click.echo("Changes discarded.")
                return None

            changes = await asyncio.to_thread(
                extract_changes, environment, settings.CONTAINER_WORKDIR
            )
        return changes
    finally:
        await asyncio.to_thread(environment.release)


async def run_session(
    agent: str,
    workdir: str | Path,
    cancelled: asyncio.Event | None = None,
    engine_host: str = settings.ENGINE_HOST,
) -> SessionOutcome:
    """Run ``agent`` in a container mirroring ``workdir``.

    Args:
        agent: Agent identifier passed to the agent binary
        workdir: Local directory mirrored into the container and updated on apply
        cancelled: Set to interrupt the session
        engine_host: Build engine address

    Returns:
        Whether the captured changes were applied or discarded
    """
    if cancelled is None:
        cancelled = asyncio.Event()
    workdir = Path(workdir).resolve()

    engine = await asyncio.to_thread(connect, engine_host)
    try:
        progress: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        _, changes = await until_cancelled(
            join_fail_fast(
                drain_progress(progress),
                build_and_run(engine, agent, workdir, progress),
            ),
            cancelled,
        )
    finally:
        engine.close()

    if changes is None:
        return SessionOutcome.DISCARDED

    await asyncio.to_thread(apply_archive, changes, workdir)
    click.echo("Changes applied successfully.")
    return SessionOutcome.APPLIED
