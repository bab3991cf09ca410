"""Local terminal access: size queries, raw mode and the yes/no prompt."""

import asyncio
import io
import logging
import os
import sys
import termios
import tty
from contextlib import contextmanager
from typing import Iterator, TextIO

import click

from aild.errors import ShellError

logger = logging.getLogger(__name__)


class Console:
    """The local terminal, addressed by its input and output descriptors."""

    def __init__(self, input_fd: int = 0, output_fd: int = 1):
        self.input_fd = input_fd
        self.output_fd = output_fd

    @classmethod
    def current(cls) -> "Console | None":
        """Return the attached terminal, or None when not run interactively."""
        fds = []
        for stream in (sys.stdin, sys.stdout):
            try:
                fd = stream.fileno()
            except (AttributeError, ValueError, io.UnsupportedOperation):
                return None
            if not os.isatty(fd):
                return None
            fds.append(fd)
        return cls(*fds)

    def size(self) -> tuple[int, int]:
        """Current (rows, columns). Raises OSError if the size can't be read."""
        size = os.get_terminal_size(self.output_fd)
        return size.lines, size.columns

    @contextmanager
    def raw_mode(self) -> Iterator[None]:
        """Put the terminal into raw mode, restoring the previous mode on exit."""
        try:
            previous = termios.tcgetattr(self.input_fd)
            tty.setraw(self.input_fd)
        except (termios.error, OSError) as e:
            raise ShellError(f"failed to set terminal raw mode: {e}") from e

        try:
            yield
        finally:
            termios.tcsetattr(self.input_fd, termios.TCSADRAIN, previous)
            logger.debug("Restored terminal mode")


async def read_fd(fd: int, size: int) -> bytes:
    """Wait until ``fd`` is readable, then read up to ``size`` bytes."""
    loop = asyncio.get_running_loop()
    ready: asyncio.Future[None] = loop.create_future()

    def on_readable() -> None:
        if not ready.done():
            ready.set_result(None)

    try:
        loop.add_reader(fd, on_readable)
    except PermissionError:
        # regular files can't be polled and never block
        return os.read(fd, size)
    try:
        await ready
    finally:
        loop.remove_reader(fd)
    return os.read(fd, size)


async def read_line(stream: TextIO) -> str:
    """Read one line from ``stream`` on the event loop, so it can be cancelled."""
    try:
        fd = stream.fileno()
    except (AttributeError, ValueError, io.UnsupportedOperation):
        return stream.readline()

    data = bytearray()
    while not data.endswith(b"\n"):
        chunk = await read_fd(fd, 1024)
        if not chunk:
            break
        data += chunk
    return data.decode("utf-8", errors="replace")


async def ask_yes_no(prompt: str, stream: TextIO | None = None) -> bool:
    """Ask a yes/no question until answered. Unreadable input counts as no."""
    stream = stream or sys.stdin
    while True:
        click.echo(f"{prompt} [y/n]: ", nl=False)
        try:
            answer = await read_line(stream)
        except (OSError, ValueError) as e:
            logger.debug(f"Could not read answer: {e}")
            return False
        if not answer:
            return False

        answer = answer.strip().lower()
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False
        click.echo("Please enter 'y' or 'n'")
