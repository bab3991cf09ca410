"""Build engine adapter on top of the Docker Engine API.

The workspace "build graph" is a generated Dockerfile that copies the local
``context`` mount into the container workdir on top of a base image. Solving
it is an image build; environments are containers created from the result,
kept alive by their init process while interactive processes run as execs.
"""

from __future__ import annotations

import io
import logging
import platform
import re
import socket
import tarfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, cast

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import Container

from aild.common import settings
from aild.errors import BuildError, ContainerError, EngineConnectionError

logger = logging.getLogger(__name__)

DOCKERFILE_NAME = ".aild.Dockerfile"
LABELS = {"managed-by": "aild"}
EXEC_POLL_INTERVAL = 0.1

# Map platform.machine() values onto OCI architecture names
ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
}

SUCCESSFULLY_BUILT = re.compile(r"(^Successfully built |sha256:)([0-9a-f]+)$")

ProgressCallback = Callable[[dict[str, Any]], None]

ENGINE_ERRORS = (DockerException, requests.RequestException)


@contextmanager
def engine_errors(error_cls: type[Exception], action: str) -> Iterator[None]:
    """Re-raise Docker/transport failures as ``error_cls`` prefixed by ``action``."""
    try:
        yield
    except ENGINE_ERRORS as e:
        raise error_cls(f"{action}: {e}") from e


def host_platform() -> str:
    machine = platform.machine().lower()
    return f"linux/{ARCH_ALIASES.get(machine, machine)}"


@dataclass
class BuildDefinition:
    """Base image plus a copy of an input mount into the container."""

    base_image: str = settings.BASE_IMAGE
    source: str = settings.CONTEXT_MOUNT
    destination: str = settings.CONTAINER_WORKDIR
    platform: str = field(default_factory=host_platform)
    step_name: str = "copying local context to container"

    def render(self) -> str:
        return f"FROM {self.base_image}\nCOPY {self.source}/ {self.destination}/\n"


def reset_ownership(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def make_build_context(
    definition: BuildDefinition, mounts: dict[str, Path]
) -> io.BytesIO:
    """Pack the Dockerfile and every input mount into a tar build context.

    Each mount ends up under a top-level directory named after it.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        dockerfile = definition.render().encode()
        info = tarfile.TarInfo(name=DOCKERFILE_NAME)
        info.size = len(dockerfile)
        info.mode = 0o644
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(dockerfile))

        for name, path in mounts.items():
            tar.add(path, arcname=name, filter=reset_ownership)
    buf.seek(0)
    return buf


def image_id_from_event(event: dict[str, Any]) -> str | None:
    aux = event.get("aux")
    if isinstance(aux, dict) and aux.get("ID"):
        return str(aux["ID"])
    stream = str(event.get("stream", "")).strip()
    if match := SUCCESSFULLY_BUILT.search(stream):
        return match.group(2)
    return None


class Process:
    """An exec instance running inside an environment."""

    def __init__(self, api: docker.APIClient, exec_id: str, tty: bool = False):
        self.api = api
        self.exec_id = exec_id
        self.tty = tty

    def attach(self) -> socket.socket:
        """Start the process and return the raw socket wired to its tty."""
        with engine_errors(ContainerError, "failed to attach to process"):
            sock = self.api.exec_start(self.exec_id, tty=self.tty, socket=True)
        # docker returns a SocketIO wrapper for unix and tcp transports
        return cast(socket.socket, getattr(sock, "_sock", sock))

    def collect(self) -> tuple[bytes, bytes]:
        """Start the process and block until it exits, returning (stdout, stderr)."""
        with engine_errors(ContainerError, "failed to run process"):
            output = self.api.exec_start(self.exec_id, tty=self.tty, demux=True)
        stdout, stderr = output if output else (None, None)
        return stdout or b"", stderr or b""

    def wait(self) -> int:
        """Block until the process exits and return its exit code."""
        while True:
            with engine_errors(ContainerError, "failed to inspect process"):
                info = self.api.exec_inspect(self.exec_id)
            if not info.get("Running"):
                exit_code = info.get("ExitCode")
                return -1 if exit_code is None else int(exit_code)
            time.sleep(EXEC_POLL_INTERVAL)

    def resize(self, rows: int, cols: int) -> None:
        with engine_errors(ContainerError, "failed to resize process"):
            self.api.exec_resize(self.exec_id, height=rows, width=cols)


class InitProcess:
    """The container's primary process, which keeps the environment addressable."""

    def __init__(self, container: Container):
        self.container = container

    def wait(self) -> int | None:
        """Block until the init process exits. Failures are reported as None."""
        try:
            result = self.container.wait()
        except ENGINE_ERRORS as e:
            logger.debug(f"Waiting for {self.container.short_id} failed: {e}")
            return None
        return result.get("StatusCode")

    def stop(self) -> None:
        try:
            self.container.kill()
        except NotFound:
            logger.debug(f"Container already gone: {self.container.short_id}")
        except APIError as e:
            # 409 when the process has already exited
            logger.debug(f"Failed to stop {self.container.short_id}: {e}")
        except ENGINE_ERRORS as e:
            logger.warning(f"Failed to stop {self.container.short_id}: {e}")


class Environment:
    """An ephemeral container created from a solved workspace image."""

    def __init__(self, engine: BuildEngine, container: Container, image: str):
        self.engine = engine
        self.container = container
        self.image = image

    @property
    def id(self) -> str:
        return str(self.container.id)

    def start_init(self) -> InitProcess:
        with engine_errors(ContainerError, "failed to start init process"):
            self.container.start()
        logger.info(f"Started container {self.container.short_id}")
        return InitProcess(self.container)

    def start(
        self,
        args: list[str],
        env: dict[str, str] | None = None,
        cwd: str = "/",
        tty: bool = False,
    ) -> Process:
        """Create a process in the container. It runs once attached or collected."""
        logger.debug(f"Starting {args!r} in {self.container.short_id} (tty={tty})")
        with engine_errors(ContainerError, f"failed to start {args[0]}"):
            result = self.engine.api.exec_create(
                self.id,
                args,
                stdout=True,
                stderr=True,
                stdin=tty,
                tty=tty,
                environment=env or {},
                workdir=cwd,
            )
        return Process(self.engine.api, result["Id"], tty=tty)

    def release(self) -> None:
        """Remove the container and its image. Never raises."""
        try:
            self.container.remove(force=True)
            logger.info(f"Removed container {self.container.short_id}")
        except NotFound:
            logger.debug(f"Container already removed: {self.container.short_id}")
        except ENGINE_ERRORS as e:
            logger.warning(f"Failed to remove container {self.container.short_id}: {e}")
        self.engine.remove_image(self.image)


class BuildEngine:
    """Connection to the engine that builds workspaces and runs containers."""

    def __init__(self, client: docker.DockerClient):
        self.client = client

    @property
    def api(self) -> docker.APIClient:
        return self.client.api

    def solve(
        self,
        definition: BuildDefinition,
        mounts: dict[str, Path],
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Build the definition against the given mounts and return the image id."""
        logger.info(f"Solving workspace: {definition.step_name} ({definition.platform})")
        try:
            context = make_build_context(definition, mounts)
        except OSError as e:
            raise BuildError(f"failed to read local context: {e}") from e

        image_id = None
        with engine_errors(BuildError, "failed to solve"):
            events = self.api.build(
                fileobj=context,
                custom_context=True,
                dockerfile=DOCKERFILE_NAME,
                platform=definition.platform,
                labels=LABELS,
                rm=True,
                forcerm=True,
                decode=True,
            )
            for event in events:
                if on_progress:
                    on_progress(event)
                if "error" in event:
                    raise BuildError(f"failed to solve: {str(event['error']).strip()}")
                image_id = image_id_from_event(event) or image_id

        if not image_id:
            raise BuildError("failed to get reference: build produced no image")
        logger.info(f"Solved workspace image {image_id[:19]}")
        return image_id

    def new_container(
        self,
        image: str,
        init_args: list[str],
        init_env: dict[str, str] | None = None,
        init_cwd: str = "/",
    ) -> Environment:
        """Create (but do not start) a container whose init process is ``init_args``."""
        try:
            container = cast(
                Container,
                self.client.containers.create(
                    image,
                    entrypoint=init_args,
                    environment=init_env or {},
                    working_dir=init_cwd,
                    labels=LABELS,
                    security_opt=["no-new-privileges:true"],
                ),
            )
        except ENGINE_ERRORS as e:
            self.remove_image(image)
            raise ContainerError(f"failed to create container: {e}") from e

        logger.info(f"Created container {container.short_id} from {image[:19]}")
        return Environment(self, container, image)

    def remove_image(self, image: str) -> None:
        try:
            self.client.images.remove(image, force=True)
        except NotFound:
            pass
        except ENGINE_ERRORS as e:
            logger.warning(f"Failed to remove image {image[:19]}: {e}")

    def close(self) -> None:
        self.client.close()


def connect(
    address: str = settings.ENGINE_HOST, timeout: int = settings.ENGINE_TIMEOUT
) -> BuildEngine:
    """Connect to the engine at ``address`` and check that it responds."""
    try:
        client = docker.DockerClient(base_url=address, timeout=timeout)
    except ENGINE_ERRORS as e:
        raise EngineConnectionError(address, str(e)) from e

    try:
        client.ping()
    except ENGINE_ERRORS as e:
        client.close()
        raise EngineConnectionError(address, str(e)) from e
    logger.info(f"Connected to build engine at {address}")
    return BuildEngine(client)
