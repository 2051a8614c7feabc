"""
Thin bridge over the docker daemon (docker SDK) and the `docker compose` CLI.

Compose commands block until the CLI exits; a non-zero exit or a timeout is
raised as CommandError with the combined stdout/stderr.
"""
import logging
import os
import subprocess
from contextlib import contextmanager
from typing import Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, NotFound

import config
from errors import (
    CommandError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ServiceUnavailableError,
    StackError,
)

log = logging.getLogger(__name__)


@contextmanager
def docker_errors(what: str):
    """
    Translate docker SDK exceptions into stack errors.
    """
    try:
        yield
    except NotFound as e:
        raise NotFoundError(f"{what}: {e.explanation or e}") from e
    except APIError as e:
        text = str(e.explanation or e)
        if e.status_code == 403 or "permission denied" in text.lower():
            raise PermissionDeniedError(f"{what}: {text}") from e
        if e.status_code == 409:
            raise ConflictError(f"{what}: {text}") from e
        raise StackError(f"{what}: {text}") from e
    except DockerException as e:
        raise ServiceUnavailableError(f"{what}: docker daemon unreachable ({e})") from e


class ComposeRuntime:
    """
    up/start/stop/restart/down/logs against a compose project + direct
    container queries through the docker SDK.
    """

    def __init__(self, client=None, up_timeout: int = config.UP_TIMEOUT_SEC,
                 command_timeout: int = config.COMMAND_TIMEOUT_SEC):
        self._client = client
        self.up_timeout = up_timeout
        self.command_timeout = command_timeout

    @property
    def client(self):
        # created lazily so importing the app does not need a docker socket
        if self._client is None:
            with docker_errors("Connecting to docker"):
                self._client = docker.from_env()
        return self._client

    # ----------------------------------------------------------------------------------
    # docker compose CLI
    # ----------------------------------------------------------------------------------

    def _compose(self, stack_dir: str, manifest_path: str, stack_name: str, args: List[str],
                 timeout: int, env: Optional[Dict[str, str]] = None) -> str:
        cmd = ["docker", "compose", "-f", manifest_path, "-p", stack_name, *args]
        log.info("[COMPOSE] %s: %s", stack_name, " ".join(cmd))

        run_env = None
        if env:
            run_env = {**os.environ, **env}

        try:
            result = subprocess.run(
                cmd,
                cwd=stack_dir,
                env=run_env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise ServiceUnavailableError("docker CLI not available on this host") from e
        except subprocess.TimeoutExpired as e:
            output = _combine(e.stdout, e.stderr)
            raise CommandError(
                f"docker compose {args[0]} timed out after {timeout}s",
                output=output,
                timed_out=True,
            ) from e

        output = _combine(result.stdout, result.stderr)
        if result.returncode != 0:
            log.error("[COMPOSE] %s: %s failed (%s)", stack_name, args[0], result.returncode)
            raise CommandError(
                f"docker compose {args[0]} failed: {output.strip()}",
                output=output,
                returncode=result.returncode,
            )
        return result.stdout

    def up(self, stack_dir: str, manifest_path: str, stack_name: str,
           env: Optional[Dict[str, str]] = None, recreate: bool = False) -> None:
        args = ["up", "-d"]
        if recreate:
            args.append("--force-recreate")
        self._compose(stack_dir, manifest_path, stack_name, args, self.up_timeout, env)

    def pull(self, stack_dir: str, manifest_path: str, stack_name: str) -> None:
        self._compose(stack_dir, manifest_path, stack_name, ["pull"], self.up_timeout)

    def start(self, stack_dir: str, manifest_path: str, stack_name: str,
              service_name: Optional[str] = None) -> None:
        self._service_command("start", stack_dir, manifest_path, stack_name, service_name)

    def stop(self, stack_dir: str, manifest_path: str, stack_name: str,
             service_name: Optional[str] = None) -> None:
        self._service_command("stop", stack_dir, manifest_path, stack_name, service_name)

    def restart(self, stack_dir: str, manifest_path: str, stack_name: str,
                service_name: Optional[str] = None) -> None:
        self._service_command("restart", stack_dir, manifest_path, stack_name, service_name)

    def _service_command(self, verb: str, stack_dir: str, manifest_path: str, stack_name: str,
                         service_name: Optional[str]) -> None:
        args = [verb]
        if service_name:
            args.append(service_name)
        self._compose(stack_dir, manifest_path, stack_name, args, self.command_timeout)

    def down(self, stack_dir: str, manifest_path: str, stack_name: str,
             remove_volumes: bool = False) -> None:
        args = ["down"]
        if remove_volumes:
            args.append("-v")
        self._compose(stack_dir, manifest_path, stack_name, args, self.command_timeout)

    def logs(self, stack_dir: str, manifest_path: str, stack_name: str,
             lines: Optional[int] = None, service: Optional[str] = None) -> List[str]:
        args = ["logs", "--no-color"]
        if lines:
            args += ["--tail", str(lines)]
        if service:
            args.append(service)
        stdout = self._compose(stack_dir, manifest_path, stack_name, args, self.command_timeout)
        return [line for line in stdout.splitlines() if line.strip()]

    # ----------------------------------------------------------------------------------
    # docker SDK
    # ----------------------------------------------------------------------------------

    def list_containers_by_prefix(self, prefix: str) -> List:
        """
        All containers (running + stopped) whose name starts with `prefix`.
        The daemon's name filter is a substring match, so re-check here.
        """
        with docker_errors("Listing containers"):
            containers = self.client.containers.list(all=True, filters={"name": prefix})
        return [c for c in containers if (c.name or "").lstrip("/").startswith(prefix)]

    def inspect(self, container) -> Dict:
        with docker_errors(f"Inspecting container {container.id[:12]}"):
            container.reload()
        return container.attrs

    def stats(self, container) -> Dict:
        with docker_errors(f"Reading stats of container {container.id[:12]}"):
            return container.stats(stream=False)

    def remove_container(self, container, remove_volumes: bool = False) -> None:
        with docker_errors(f"Removing container {container.id[:12]}"):
            state = container.attrs.get("State", {})
            if state.get("Running", False):
                container.stop()
            container.remove(v=remove_volumes)

    def ensure_volume(self, name: str) -> bool:
        """
        Create the named volume if missing. Returns True when it was created.
        """
        try:
            with docker_errors(f"Inspecting volume {name}"):
                self.client.volumes.get(name)
            return False
        except NotFoundError:
            pass
        with docker_errors(f"Creating volume {name}"):
            self.client.volumes.create(name=name)
        log.info("Created volume %s", name)
        return True

    def ensure_network(self, name: str) -> bool:
        with docker_errors(f"Creating network {name}"):
            if self.client.networks.list(names=[name]):
                return False
            self.client.networks.create(name, driver="bridge")
        log.info("Created network %s", name)
        return True


def _combine(stdout, stderr) -> str:
    parts = []
    for chunk in (stdout, stderr):
        if not chunk:
            continue
        if isinstance(chunk, bytes):
            chunk = chunk.decode(errors="replace")
        parts.append(chunk)
    return "\n".join(parts)
