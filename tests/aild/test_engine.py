"""Tests for the Docker-backed build engine adapter."""

import socket
import tarfile
from unittest.mock import MagicMock, call, patch

import pytest
import requests
from docker.errors import APIError, NotFound

from aild.engine import (
    DOCKERFILE_NAME,
    LABELS,
    BuildDefinition,
    BuildEngine,
    Environment,
    InitProcess,
    Process,
    connect,
    host_platform,
    image_id_from_event,
    make_build_context,
)
from aild.errors import BuildError, ContainerError, EngineConnectionError


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def engine(client):
    return BuildEngine(client)


@pytest.mark.parametrize(
    "machine, expected",
    [
        ("x86_64", "linux/amd64"),
        ("aarch64", "linux/arm64"),
        ("arm64", "linux/arm64"),
        ("riscv64", "linux/riscv64"),
    ],
)
def test_host_platform(machine, expected):
    with patch("aild.engine.platform.machine", return_value=machine):
        assert host_platform() == expected


def test_build_definition_render():
    definition = BuildDefinition(base_image="alpine:3.20", platform="linux/amd64")

    assert definition.render() == "FROM alpine:3.20\nCOPY context/ /workspace/\n"


def test_make_build_context_packs_dockerfile_and_mounts(tmp_path):
    (tmp_path / "main.go").write_text("package main\n")
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "util.go").write_text("package pkg\n")
    definition = BuildDefinition(base_image="alpine", platform="linux/amd64")

    context = make_build_context(definition, {"context": tmp_path})

    with tarfile.open(fileobj=context, mode="r") as tar:
        names = set(tar.getnames())
        dockerfile = tar.extractfile(DOCKERFILE_NAME).read().decode()
        owners = {(m.uid, m.gid) for m in tar.getmembers()}

    assert {"context", "context/main.go", "context/pkg/util.go"} <= names
    assert dockerfile == definition.render()
    assert owners == {(0, 0)}


@pytest.mark.parametrize(
    "event, expected",
    [
        ({"aux": {"ID": "sha256:abc123"}}, "sha256:abc123"),
        ({"stream": "Successfully built 0123abcd\n"}, "0123abcd"),
        ({"stream": "Step 1/2 : FROM alpine\n"}, None),
        ({"status": "Pulling fs layer"}, None),
    ],
)
def test_image_id_from_event(event, expected):
    assert image_id_from_event(event) == expected


def test_solve_reports_progress_and_returns_image(engine, client, tmp_path):
    events = [
        {"stream": "Step 1/2 : FROM alpine\n"},
        {"stream": "Step 2/2 : COPY context/ /workspace/\n"},
        {"aux": {"ID": "sha256:feedbeef"}},
    ]
    client.api.build.return_value = iter(events)
    seen = []

    image = engine.solve(
        BuildDefinition(platform="linux/arm64"), {"context": tmp_path}, seen.append
    )

    assert image == "sha256:feedbeef"
    assert seen == events
    kwargs = client.api.build.call_args.kwargs
    assert kwargs["custom_context"] is True
    assert kwargs["dockerfile"] == DOCKERFILE_NAME
    assert kwargs["platform"] == "linux/arm64"
    assert kwargs["decode"] is True
    assert kwargs["labels"] == LABELS


def test_solve_raises_on_error_event(engine, client, tmp_path):
    client.api.build.return_value = iter(
        [{"stream": "Step 1/2\n"}, {"error": "pull access denied for nope\n"}]
    )

    with pytest.raises(BuildError, match="pull access denied"):
        engine.solve(BuildDefinition(), {"context": tmp_path})


def test_solve_wraps_api_errors(engine, client, tmp_path):
    client.api.build.side_effect = APIError("daemon exploded")

    with pytest.raises(BuildError, match="failed to solve"):
        engine.solve(BuildDefinition(), {"context": tmp_path})


def test_solve_without_image_id_fails(engine, client, tmp_path):
    client.api.build.return_value = iter([{"stream": "done\n"}])

    with pytest.raises(BuildError, match="failed to get reference"):
        engine.solve(BuildDefinition(), {"context": tmp_path})


def test_solve_missing_context_fails(engine, client, tmp_path):
    with pytest.raises(BuildError, match="failed to read local context"):
        engine.solve(BuildDefinition(), {"context": tmp_path / "missing"})

    client.api.build.assert_not_called()


def test_new_container_creates_with_init_process(engine, client):
    container = MagicMock(id="c0ffee", short_id="c0ffee")
    client.containers.create.return_value = container

    environment = engine.new_container(
        "sha256:img", ["/bin/sh", "-c", "sleep infinity"], {"PATH": "/bin"}, "/"
    )

    assert isinstance(environment, Environment)
    assert environment.container is container
    assert environment.image == "sha256:img"
    client.containers.create.assert_called_once_with(
        "sha256:img",
        entrypoint=["/bin/sh", "-c", "sleep infinity"],
        environment={"PATH": "/bin"},
        working_dir="/",
        labels=LABELS,
        security_opt=["no-new-privileges:true"],
    )
    container.start.assert_not_called()


def test_new_container_failure_removes_image(engine, client):
    client.containers.create.side_effect = APIError("no space left")

    with pytest.raises(ContainerError, match="failed to create container"):
        engine.new_container("sha256:img", ["sleep"])

    client.images.remove.assert_called_once_with("sha256:img", force=True)


def test_environment_start_creates_exec(engine, client):
    container = MagicMock(id="c0ffee")
    client.api.exec_create.return_value = {"Id": "exec-1"}
    environment = Environment(engine, container, "img")

    process = environment.start(["/cagent", "run", "dev"], {"TERM": "xterm"}, "/workspace", tty=True)

    assert process.exec_id == "exec-1"
    assert process.tty is True
    client.api.exec_create.assert_called_once_with(
        "c0ffee",
        ["/cagent", "run", "dev"],
        stdout=True,
        stderr=True,
        stdin=True,
        tty=True,
        environment={"TERM": "xterm"},
        workdir="/workspace",
    )


def test_environment_start_wraps_errors(engine, client):
    client.api.exec_create.side_effect = NotFound("container gone")
    environment = Environment(engine, MagicMock(id="c0ffee"), "img")

    with pytest.raises(ContainerError, match="failed to start /bin/sh"):
        environment.start(["/bin/sh"])


def test_environment_start_init_starts_container(engine):
    container = MagicMock()
    environment = Environment(engine, container, "img")

    init = environment.start_init()

    container.start.assert_called_once_with()
    assert isinstance(init, InitProcess)


def test_environment_release_removes_container_and_image(engine, client):
    container = MagicMock()
    environment = Environment(engine, container, "sha256:img")

    environment.release()

    container.remove.assert_called_once_with(force=True)
    client.images.remove.assert_called_once_with("sha256:img", force=True)


def test_environment_release_tolerates_missing_resources(engine, client):
    container = MagicMock()
    container.remove.side_effect = NotFound("gone")
    client.images.remove.side_effect = NotFound("gone")
    environment = Environment(engine, container, "sha256:img")

    environment.release()

    client.images.remove.assert_called_once()


def test_environment_release_tolerates_engine_errors(engine, client):
    container = MagicMock()
    container.remove.side_effect = requests.ConnectionError("daemon went away")
    environment = Environment(engine, container, "sha256:img")

    environment.release()

    client.images.remove.assert_called_once()


def test_process_wait_polls_until_exit():
    api = MagicMock()
    api.exec_inspect.side_effect = [
        {"Running": True, "ExitCode": None},
        {"Running": True, "ExitCode": None},
        {"Running": False, "ExitCode": 3},
    ]

    with patch("aild.engine.time.sleep") as sleep:
        assert Process(api, "exec-1").wait() == 3

    assert api.exec_inspect.call_count == 3
    assert sleep.call_count == 2


def test_process_wait_without_exit_code():
    api = MagicMock()
    api.exec_inspect.return_value = {"Running": False, "ExitCode": None}

    assert Process(api, "exec-1").wait() == -1


def test_process_collect_demuxes_output():
    api = MagicMock()
    api.exec_start.return_value = (b"archive", None)

    assert Process(api, "exec-1").collect() == (b"archive", b"")
    api.exec_start.assert_called_once_with("exec-1", tty=False, demux=True)


def test_process_attach_unwraps_socket():
    api = MagicMock()
    raw = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    wrapper = MagicMock(_sock=raw)
    api.exec_start.return_value = wrapper

    try:
        assert Process(api, "exec-1", tty=True).attach() is raw
    finally:
        raw.close()
    api.exec_start.assert_called_once_with("exec-1", tty=True, socket=True)


def test_process_resize():
    api = MagicMock()

    Process(api, "exec-1").resize(40, 120)

    api.exec_resize.assert_called_once_with("exec-1", height=40, width=120)


def test_process_resize_wraps_errors():
    api = MagicMock()
    api.exec_resize.side_effect = APIError("not running")

    with pytest.raises(ContainerError, match="failed to resize"):
        Process(api, "exec-1").resize(40, 120)


def test_init_process_wait_returns_status():
    container = MagicMock()
    container.wait.return_value = {"StatusCode": 137}

    assert InitProcess(container).wait() == 137


def test_init_process_wait_reports_failure_as_none():
    container = MagicMock()
    container.wait.side_effect = NotFound("removed")

    assert InitProcess(container).wait() is None


def test_init_process_stop_tolerates_exited_container():
    container = MagicMock()
    container.kill.side_effect = APIError("is not running")

    InitProcess(container).stop()

    container.kill.assert_called_once_with()


def test_init_process_stop_tolerates_lost_engine():
    container = MagicMock()
    container.kill.side_effect = requests.ConnectionError("daemon went away")

    InitProcess(container).stop()

    container.kill.assert_called_once_with()


@patch("aild.engine.docker.DockerClient")
def test_connect_pings_engine(mock_client_cls):
    client = mock_client_cls.return_value

    engine = connect("tcp://engine:2375", timeout=5)

    mock_client_cls.assert_called_once_with(base_url="tcp://engine:2375", timeout=5)
    client.ping.assert_called_once_with()
    assert engine.client is client


@patch("aild.engine.docker.DockerClient")
def test_connect_failure_includes_guidance(mock_client_cls):
    client = mock_client_cls.return_value
    client.ping.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(EngineConnectionError) as exc_info:
        connect("unix:///var/run/docker.sock")

    message = str(exc_info.value)
    assert "unix:///var/run/docker.sock" in message
    assert "connection refused" in message
    assert "AILD_ENGINE_HOST" in message
    client.close.assert_called_once_with()


def test_engine_close_closes_client(engine, client):
    engine.close()

    client.close.assert_called_once_with()
    assert client.mock_calls == [call.close()]
