"""Errors raised while running a sandbox session.

Every failure is terminal for the session. The CLI prints the message of any
``AildError`` on a single line and exits non-zero.
"""


class AildError(Exception):
    """Base class for session failures."""


class EngineConnectionError(AildError):
    """The build engine could not be reached."""

    def __init__(self, address: str, reason: str):
        self.address = address
        self.reason = reason
        super().__init__(
            f"failed to connect to build engine at {address}: {reason}\n\n"
            "Make sure the Docker daemon is running and reachable, e.g.:\n"
            "  sudo systemctl start docker\n"
            "or point AILD_ENGINE_HOST (or DOCKER_HOST) at a running engine."
        )


class BuildError(AildError):
    """Resolving the workspace image failed."""


class ContainerError(AildError):
    """Creating the container or one of its processes failed."""


class ShellError(AildError):
    """The interactive process could not be started or exited with an error."""


class ExtractionError(AildError):
    """Capturing the workspace from the container failed."""


class ApplyError(AildError):
    """Writing the captured workspace onto the local tree failed."""


class SessionCancelled(AildError):
    """The session was interrupted by a signal."""
