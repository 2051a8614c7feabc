"""
Stack lifecycle: create / start / stop / restart / update / remove.

Each stack lives in {STACKS_ROOT}/{name}/ next to its rendered
docker-compose.yml; that directory and manifest are the only record of the
stack. Member containers are always re-discovered from the live container
list by the "{name}_" prefix.
"""
import logging
import os
import re
import shutil
from typing import List, Optional

import config
from errors import ConflictError, NotFoundError, StackError, ValidationError, classify_failure
from models.stacks import STACK_NAME_PATTERN, StackConfig, StackInfo, StackMetrics
from services import manifest as manifest_tx
from services.aggregator import StackAggregator, container_prefix
from services.runtime import ComposeRuntime

log = logging.getLogger(__name__)

_NAME_RE = re.compile(STACK_NAME_PATTERN)


class StackManager:
    def __init__(self, root: str = config.STACKS_ROOT, runtime=None, aggregator=None):
        self.root = root
        self.runtime = runtime or ComposeRuntime()
        self.aggregator = aggregator or StackAggregator(self.runtime)

    # ----------------------------------------------------------------------------------
    # Paths
    # ----------------------------------------------------------------------------------

    def stack_dir(self, name: str) -> str:
        if not name or not _NAME_RE.match(name):
            raise ValidationError(f"Invalid stack name: {name!r}")
        return os.path.join(self.root, name)

    def manifest_path(self, name: str) -> str:
        return os.path.join(self.stack_dir(name), config.MANIFEST_FILENAME)

    def exists(self, name: str) -> bool:
        return os.path.isfile(self.manifest_path(name))

    def _require_manifest(self, name: str) -> str:
        path = self.manifest_path(name)
        if not os.path.isfile(path):
            raise NotFoundError(f"Compose stack not found: {name}")
        return path

    def list_stacks(self) -> List[str]:
        if not os.path.isdir(self.root):
            return []
        return sorted(
            entry for entry in os.listdir(self.root)
            if os.path.isfile(os.path.join(self.root, entry, config.MANIFEST_FILENAME))
        )

    # ----------------------------------------------------------------------------------
    # Create
    # ----------------------------------------------------------------------------------

    def create(self, cfg: StackConfig) -> StackInfo:
        stack_dir = self.stack_dir(cfg.name)
        manifest_path = os.path.join(stack_dir, config.MANIFEST_FILENAME)
        log.info("[COMPOSE] Creating stack %s", cfg.name)

        # claims the name; a leftover directory counts as taken until remove() clears it
        try:
            os.makedirs(stack_dir, mode=0o755)
        except FileExistsError as e:
            raise ConflictError(f"Compose stack already exists: {cfg.name}") from e
        except OSError as e:
            raise classify_failure(e) from e

        try:
            final_text, side_files = manifest_tx.transform(cfg.manifest, cfg, stack_dir)
            _write_file(manifest_path, final_text, 0o644)
            for side_file in side_files:
                _write_file(os.path.join(stack_dir, side_file.name), side_file.content, side_file.mode)

            if cfg.routing_enabled:
                self._ensure_routing_network()
            self._prepare_volume(manifest_tx.resolve_volume_path(cfg))

            self.runtime.up(stack_dir, manifest_path, cfg.name, env=cfg.environment or None)
        except Exception as e:
            log.error("[COMPOSE] Creating stack %s failed: %s", cfg.name, e)
            self._rollback(cfg.name)
            raise classify_failure(e) from e

        try:
            return self.aggregator.stack_status(cfg.name)
        except Exception as e:
            log.warning("Stack %s created but status is unavailable: %s", cfg.name, e)
            return StackInfo(name=cfg.name, status="unknown", services=[])

    def _rollback(self, name: str) -> None:
        try:
            self.remove(name, remove_volumes=False)
        except Exception:
            log.exception("Rollback of stack %s failed", name)

    def _ensure_routing_network(self) -> None:
        try:
            self.runtime.ensure_network(config.ROUTING_NETWORK)
        except StackError as e:
            log.warning("Could not ensure network %s: %s", config.ROUTING_NETWORK, e)

    def _prepare_volume(self, volume: str) -> None:
        """
        Named volume -> create if missing.
        Absolute path -> mkdir (0750) + chown to the container user.
        Never fails the deployment.
        """
        if not volume:
            return

        if not os.path.isabs(volume):
            try:
                self.runtime.ensure_volume(volume)
            except StackError as e:
                log.warning("Could not create volume %s: %s", volume, e)
            return

        if os.path.exists(volume):
            return
        try:
            os.makedirs(volume, mode=0o750, exist_ok=True)
        except OSError as e:
            log.warning("Could not create bind path %s: %s", volume, e)
            return
        try:
            os.chown(volume, config.VOLUME_OWNER_UID, config.VOLUME_OWNER_GID)
        except OSError as e:
            log.warning(
                "Could not chown %s to %s:%s: %s",
                volume, config.VOLUME_OWNER_UID, config.VOLUME_OWNER_GID, e,
            )

    # ----------------------------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------------------------

    def start(self, name: str, service_name: Optional[str] = None) -> None:
        path = self._require_manifest(name)
        log.info("[COMPOSE] Starting %s%s", name, f" ({service_name})" if service_name else "")
        self.runtime.start(self.stack_dir(name), path, name, service_name)

    def stop(self, name: str, service_name: Optional[str] = None) -> None:
        path = self._require_manifest(name)
        log.info("[COMPOSE] Stopping %s%s", name, f" ({service_name})" if service_name else "")
        self.runtime.stop(self.stack_dir(name), path, name, service_name)

    def restart(self, name: str, service_name: Optional[str] = None) -> None:
        path = self._require_manifest(name)
        log.info("[COMPOSE] Restarting %s%s", name, f" ({service_name})" if service_name else "")
        self.runtime.restart(self.stack_dir(name), path, name, service_name)

    def update(self, name: str) -> StackInfo:
        """
        Pull images and recreate containers from the stored manifest.
        """
        path = self._require_manifest(name)
        stack_dir = self.stack_dir(name)
        log.info("[COMPOSE] Updating %s", name)
        try:
            self.runtime.pull(stack_dir, path, name)
            self.runtime.up(stack_dir, path, name, recreate=True)
        except Exception as e:
            raise classify_failure(e) from e
        return self.aggregator.stack_status(name)

    def remove(self, name: str, remove_volumes: bool = False) -> None:
        stack_dir = self.stack_dir(name)
        manifest_path = os.path.join(stack_dir, config.MANIFEST_FILENAME)

        if os.path.isfile(manifest_path):
            log.info("[COMPOSE] Removing %s (remove_volumes=%s)", name, remove_volumes)
            self.runtime.down(stack_dir, manifest_path, name, remove_volumes)
        else:
            containers = self.runtime.list_containers_by_prefix(container_prefix(name))
            if not containers and not os.path.isdir(stack_dir):
                log.info("[COMPOSE] Stack %s not found or already removed", name)
                return
            if containers:
                log.info("[COMPOSE] Manifest for %s missing, removing %d containers directly",
                         name, len(containers))
            for container in containers:
                try:
                    self.runtime.remove_container(container, remove_volumes)
                except StackError as e:
                    log.warning("Failed to remove container %s: %s", container.id[:12], e)

        if os.path.isdir(stack_dir):
            shutil.rmtree(stack_dir)

    # ----------------------------------------------------------------------------------
    # Queries
    # ----------------------------------------------------------------------------------

    def status(self, name: str) -> StackInfo:
        self.stack_dir(name)
        return self.aggregator.stack_status(name)

    def metrics(self, name: str) -> StackMetrics:
        self.stack_dir(name)
        return self.aggregator.stack_metrics(name)

    def logs(self, name: str, lines: Optional[int] = None, service: Optional[str] = None) -> List[str]:
        path = self._require_manifest(name)
        return self.runtime.logs(self.stack_dir(name), path, name, lines=lines, service=service)

    def services(self, name: str) -> List[str]:
        """
        Service names declared in the stored manifest.
        """
        path = self._require_manifest(name)
        with open(path, encoding="utf-8") as f:
            doc = manifest_tx.parse_manifest(f.read())
        if doc is None:
            return []
        return list((doc.get("services") or {}).keys())


def _write_file(path: str, content: str, mode: int) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    os.chmod(path, mode)
