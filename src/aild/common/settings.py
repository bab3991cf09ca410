import os
import pathlib
from dotenv import load_dotenv

load_dotenv()


def list_env(key: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(key, default).split(",") if item.strip()]


# Build engine settings
DEFAULT_ENGINE_HOST = "unix:///var/run/docker.sock"
ENGINE_HOST = (
    os.getenv("AILD_ENGINE_HOST") or os.getenv("DOCKER_HOST") or DEFAULT_ENGINE_HOST
)
ENGINE_TIMEOUT = int(os.getenv("AILD_ENGINE_TIMEOUT", 60))

BASE_IMAGE = os.getenv("AILD_BASE_IMAGE", "docker/cagent:latest")
AGENT_BINARY = os.getenv("AILD_AGENT_BINARY", "/cagent")

# Container layout
CONTEXT_MOUNT = "context"
CONTAINER_WORKDIR = "/workspace"
CONTAINER_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
KEEPALIVE_COMMAND = ["/bin/sh", "-c", "sleep infinity"]

# Variables copied from the local environment into the interactive process
FORWARD_ENV = list_env("AILD_FORWARD_ENV", "TERM,COLORTERM,ANTHROPIC_API_KEY")

# Terminal relay
RESIZE_INTERVAL = float(os.getenv("AILD_RESIZE_INTERVAL", 0.25))
RELAY_CHUNK_SIZE = int(os.getenv("AILD_RELAY_CHUNK_SIZE", 4096))

# Logging
LOG_LEVEL = os.getenv("AILD_LOG_LEVEL", "WARNING").upper()
if log_file := os.getenv("AILD_LOG_FILE"):
    LOG_FILE: pathlib.Path | None = pathlib.Path(log_file)
else:
    LOG_FILE = None
