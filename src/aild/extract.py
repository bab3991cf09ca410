"""Capture a directory inside the container as an in-memory tar archive."""

import logging
import shlex

from aild.common import settings
from aild.engine import Environment
from aild.errors import ContainerError, ExtractionError

logger = logging.getLogger(__name__)


def capture_command(path: str) -> list[str]:
    return ["/bin/sh", "-c", f"cd {shlex.quote(path)} && tar cf - ."]


def extract_changes(environment: Environment, path: str) -> bytes:
    """Tar up ``path`` inside the environment and return the archive bytes.

    Any non-zero exit of the capture command fails the whole extraction.
    """
    try:
        process = environment.start(
            capture_command(path), env={"PATH": settings.CONTAINER_PATH}, cwd="/"
        )
        stdout, stderr = process.collect()
        exit_code = process.wait()
    except ContainerError as e:
        raise ExtractionError(f"failed to run tar process: {e}") from e

    if exit_code != 0:
        details = stderr.decode("utf-8", errors="replace").strip()
        raise ExtractionError(
            f"tar process failed with exit code {exit_code}"
            + (f": {details}" if details else "")
        )

    logger.info(f"Captured {len(stdout)} bytes from {path}")
    return stdout
