"""Shared fixtures: a fake compose runtime and fake docker containers."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from errors import CommandError, NotFoundError
from models.stacks import StackConfig

SIMPLE_MANIFEST = """\
services:
  web:
    image: nginx:alpine
    ports:
      - "8080:80"
  postgres:
    image: postgres:16
    environment:
      - POSTGRES_PASSWORD=secret
"""


def make_container(name: str, running: bool = True, cid: str | None = None,
                   health: str | None = None, memory: int = 0) -> MagicMock:
    """MagicMock shaped like docker.models.containers.Container."""
    container = MagicMock()
    container.id = cid or (name.replace("_", "") + "0" * 64)[:64]
    container.name = name
    state = {"Running": running}
    if health:
        state["Health"] = {"Status": health}
    container.attrs = {
        "Name": f"/{name}",
        "State": state,
        "HostConfig": {"Memory": memory},
    }
    return container


class FakeRuntime:
    """In-memory stand-in for ComposeRuntime. Records every call."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.containers: list = []
        self.volumes: set[str] = set()
        self.networks: set[str] = set()
        self.up_error: Exception | None = None
        self.down_error: Exception | None = None
        self.stats_by_id: dict[str, dict] = {}
        self.inspect_errors: set[str] = set()
        self.log_lines: list[str] = []

    # compose
    def up(self, stack_dir, manifest_path, stack_name, env=None, recreate=False):
        self.calls.append(("up", stack_name, env, recreate))
        if self.up_error:
            raise self.up_error

    def pull(self, stack_dir, manifest_path, stack_name):
        self.calls.append(("pull", stack_name))

    def start(self, stack_dir, manifest_path, stack_name, service_name=None):
        self.calls.append(("start", stack_name, service_name))

    def stop(self, stack_dir, manifest_path, stack_name, service_name=None):
        self.calls.append(("stop", stack_name, service_name))

    def restart(self, stack_dir, manifest_path, stack_name, service_name=None):
        self.calls.append(("restart", stack_name, service_name))

    def down(self, stack_dir, manifest_path, stack_name, remove_volumes=False):
        self.calls.append(("down", stack_name, remove_volumes))
        if self.down_error:
            raise self.down_error
        prefix = f"{stack_name}_"
        self.containers = [c for c in self.containers if not c.name.startswith(prefix)]

    def logs(self, stack_dir, manifest_path, stack_name, lines=None, service=None):
        self.calls.append(("logs", stack_name, lines, service))
        return list(self.log_lines)

    # docker SDK
    def list_containers_by_prefix(self, prefix):
        return [c for c in self.containers if c.name.startswith(prefix)]

    def inspect(self, container):
        if container.id in self.inspect_errors:
            raise NotFoundError(f"No such container: {container.id}")
        return container.attrs

    def stats(self, container):
        if container.id not in self.stats_by_id:
            raise CommandError("stats unavailable")
        return self.stats_by_id[container.id]

    def remove_container(self, container, remove_volumes=False):
        self.calls.append(("remove_container", container.name, remove_volumes))
        self.containers.remove(container)

    def ensure_volume(self, name):
        if name in self.volumes:
            return False
        self.volumes.add(name)
        return True

    def ensure_network(self, name):
        if name in self.networks:
            return False
        self.networks.add(name)
        return True


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def stacks_root(tmp_path):
    root = tmp_path / "stacks"
    root.mkdir()
    return root


@pytest.fixture
def stack_config() -> StackConfig:
    return StackConfig(
        name="shop",
        manifest=SIMPLE_MANIFEST,
        volume_ref="shop-data",
        port=20001,
    )
