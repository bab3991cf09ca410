"""Bridge the local terminal to an interactive process in the container.

The local terminal is put into raw mode for the lifetime of the process.
Bytes are pumped in both directions over the exec socket while a resize task
keeps the remote tty the same size as the local one.
"""

import asyncio
import logging
import os
import signal
import socket
from contextlib import contextmanager
from typing import Iterator, Mapping

from aild.common import settings
from aild.console import Console, read_fd
from aild.engine import Environment, Process
from aild.errors import ContainerError, ShellError

logger = logging.getLogger(__name__)


def agent_command(agent: str) -> list[str]:
    return [settings.AGENT_BINARY, "run", agent]


def forwarded_env(
    names: list[str] = settings.FORWARD_ENV, environ: Mapping[str, str] = os.environ
) -> dict[str, str]:
    """Environment for the interactive process: container PATH plus the allow-list."""
    env = {"PATH": settings.CONTAINER_PATH}
    for name in names:
        env[name] = environ.get(name, "")
    return env


def write_fd(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


async def pump_input(console: Console, sock: socket.socket, chunk_size: int) -> None:
    loop = asyncio.get_running_loop()
    while data := await read_fd(console.input_fd, chunk_size):
        await loop.sock_sendall(sock, data)
    logger.debug("Local input closed")


async def pump_output(sock: socket.socket, console: Console, chunk_size: int) -> None:
    """Copy process output to the terminal until the process closes the stream."""
    loop = asyncio.get_running_loop()
    while data := await loop.sock_recv(sock, chunk_size):
        write_fd(console.output_fd, data)
    logger.debug("Process output closed")


async def wait_for_resize(wake: asyncio.Event | None, interval: float) -> None:
    if wake is None:
        await asyncio.sleep(interval)
        return
    try:
        await asyncio.wait_for(wake.wait(), timeout=interval)
    except asyncio.TimeoutError:
        pass
    wake.clear()


async def forward_resizes(
    console: Console,
    process: Process,
    interval: float = settings.RESIZE_INTERVAL,
    wake: asyncio.Event | None = None,
) -> None:
    """Keep the process's tty size in step with the local terminal.

    The size is sampled every ``interval`` seconds, or as soon as ``wake`` is
    set, and only forwarded when it differs from what the process last
    accepted. Stops when the local size can no longer be read.
    """
    last: tuple[int, int] | None = None
    while True:
        try:
            size = console.size()
        except OSError as e:
            logger.debug(f"Terminal size unavailable, stopping resize forwarding: {e}")
            return

        if size != last:
            rows, cols = size
            try:
                await asyncio.to_thread(process.resize, rows, cols)
            except ContainerError as e:
                logger.debug(f"Resize to {rows}x{cols} failed: {e}")
            else:
                logger.debug(f"Resized process to {rows}x{cols}")
                last = size

        await wait_for_resize(wake, interval)


@contextmanager
def watch_resizes() -> Iterator[asyncio.Event | None]:
    """Yield an event set on SIGWINCH, or None where signals can't be watched."""
    loop = asyncio.get_running_loop()
    wake = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGWINCH, wake.set)
    except (ValueError, RuntimeError, NotImplementedError, AttributeError) as e:
        logger.debug(f"Not watching SIGWINCH: {e}")
        yield None
        return

    try:
        yield wake
    finally:
        loop.remove_signal_handler(signal.SIGWINCH)


async def relay(
    console: Console,
    process: Process,
    sock: socket.socket,
    interval: float = settings.RESIZE_INTERVAL,
    chunk_size: int = settings.RELAY_CHUNK_SIZE,
) -> None:
    """Pump bytes between the terminal and ``sock`` until the process exits."""
    sock.setblocking(False)
    with watch_resizes() as wake:
        background = [
            asyncio.create_task(pump_input(console, sock, chunk_size)),
            asyncio.create_task(forward_resizes(console, process, interval, wake)),
        ]
        try:
            await pump_output(sock, console, chunk_size)
        finally:
            for task in background:
                task.cancel()
            results = await asyncio.gather(*background, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.debug(f"Relay task failed: {result!r}")


async def run_interactive_shell(
    environment: Environment,
    agent: str,
    console: Console | None = None,
    interval: float = settings.RESIZE_INTERVAL,
) -> None:
    """Run the agent interactively in ``environment``, blocking until it exits.

    Raises:
        ShellError: no terminal, raw mode failed, the process could not be
            started, or it exited with a non-zero status
    """
    if console is None:
        console = Console.current()
    if console is None:
        raise ShellError("no console available")

    with console.raw_mode():
        try:
            process = await asyncio.to_thread(
                environment.start,
                agent_command(agent),
                forwarded_env(),
                settings.CONTAINER_WORKDIR,
                tty=True,
            )
            sock = await asyncio.to_thread(process.attach)
        except ContainerError as e:
            raise ShellError(f"failed to start shell: {e}") from e

        try:
            await relay(console, process, sock, interval)
        except OSError as e:
            raise ShellError(f"terminal relay failed: {e}") from e
        finally:
            sock.close()

        try:
            exit_code = await asyncio.to_thread(process.wait)
        except ContainerError as e:
            raise ShellError(f"shell failed: {e}") from e

    if exit_code != 0:
        raise ShellError(f"shell exited with status {exit_code}")
