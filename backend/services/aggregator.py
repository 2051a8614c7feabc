import logging
import re
from typing import Dict, List

import config
from models.stacks import ServiceMetrics, ServiceState, StackInfo, StackMetrics
from services.executor import run_bounded

log = logging.getLogger(__name__)

_ORDINAL_SUFFIX = re.compile(r"[_-]\d+$")


# --------------------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------------------

def container_prefix(stack_name: str) -> str:
    return f"{stack_name}_"


def service_name_from_container(container_name: str, stack_name: str) -> str:
    """
    "/shop_web_1" -> "web"
    """
    name = (container_name or "").lstrip("/")
    prefix = container_prefix(stack_name)
    if name.startswith(prefix):
        name = name[len(prefix):]
    return _ORDINAL_SUFFIX.sub("", name) or name


def _short_id(container) -> str:
    return (getattr(container, "id", None) or "unknown")[:12]


def _classify_state(attrs: Dict):
    """
    attrs -> ("running" | "stopped", ready).
    ready follows the healthcheck when the container has one.
    """
    state = attrs.get("State", {}) or {}
    running = bool(state.get("Running", False))
    health = (state.get("Health") or {}).get("Status")
    ready = health == "healthy" if health else running

    return ("running" if running else "stopped"), ready


def overall_status(services: List[ServiceState]) -> str:
    running = sum(1 for s in services if s.status == "running")
    if services and running == len(services):
        return "running"
    if running > 0:
        return "partial"
    return "stopped"


def calculate_cpu_percent(stats: Dict) -> float:
    """
    Docker formula: (cpu_delta / system_delta) * online_cpus * 100
    """
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}
    if not cpu_stats or not precpu_stats:
        return 0.0

    cpu_total = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0)
    cpu_prev_total = (precpu_stats.get("cpu_usage") or {}).get("total_usage", 0)
    system_total = cpu_stats.get("system_cpu_usage")
    system_prev_total = precpu_stats.get("system_cpu_usage")

    cpu_delta = cpu_total - cpu_prev_total
    system_delta = (
        (system_total - system_prev_total)
        if (system_total is not None and system_prev_total is not None)
        else 0
    )

    cpu_count = (
        cpu_stats.get("online_cpus")  # new docker
        or len((cpu_stats.get("cpu_usage") or {}).get("percpu_usage") or [])  # old docker
        or 1
    )

    if cpu_delta < 0 or system_delta <= 0:
        return 0.0
    return (cpu_delta / system_delta) * cpu_count * 100.0


def configured_memory_limit(attrs: Dict) -> int:
    """
    Hard limit set on the container, 0 when unlimited.
    stats()["memory_stats"]["limit"] reports the host ceiling instead, never use it here.
    """
    return int((attrs.get("HostConfig") or {}).get("Memory") or 0)


def network_totals(stats: Dict):
    rx_total = 0
    tx_total = 0
    for data in (stats.get("networks") or {}).values():
        rx_total += data.get("rx_bytes", 0)
        tx_total += data.get("tx_bytes", 0)
    return rx_total, tx_total


# --------------------------------------------------------------------------------------
# Aggregator
# --------------------------------------------------------------------------------------

class StackAggregator:
    """
    Rebuilds stack status / metrics from per-container inspect and stats calls.
    One call per container, fanned out in parallel; a failing container
    degrades its own entry only.
    """

    def __init__(self, runtime, max_workers: int = config.STATS_MAX_WORKERS):
        self.runtime = runtime
        self.max_workers = max_workers

    def _containers(self, stack_name: str) -> List:
        return self.runtime.list_containers_by_prefix(container_prefix(stack_name))

    def _service_state(self, container, stack_name: str) -> ServiceState:
        try:
            attrs = self.runtime.inspect(container)
        except Exception as e:
            log.warning("inspect failed for container %s: %s", _short_id(container), e)
            return ServiceState(name=_short_id(container), status="error", ready=False)

        status, ready = _classify_state(attrs)
        name = service_name_from_container(attrs.get("Name") or container.name, stack_name)
        return ServiceState(name=name, status=status, ready=ready)

    def stack_status(self, stack_name: str) -> StackInfo:
        containers = self._containers(stack_name)
        if not containers:
            return StackInfo(name=stack_name, status="stopped", services=[])

        services = run_bounded(
            containers,
            lambda c: self._service_state(c, stack_name),
            self.max_workers,
        )
        return StackInfo(name=stack_name, status=overall_status(services), services=services)

    def _service_metrics(self, container, stack_name: str) -> ServiceMetrics:
        name = _short_id(container)
        try:
            attrs = self.runtime.inspect(container)
            name = service_name_from_container(attrs.get("Name") or container.name, stack_name)
            stats = self.runtime.stats(container)

            memory_used = int((stats.get("memory_stats") or {}).get("usage") or 0)
            memory_limit = configured_memory_limit(attrs)
            memory_percent = (memory_used / memory_limit) * 100.0 if memory_limit > 0 else 0.0
            rx, tx = network_totals(stats)

            return ServiceMetrics(
                name=name,
                cpu_percent=calculate_cpu_percent(stats),
                memory_used=memory_used,
                memory_limit=memory_limit,
                memory_percent=memory_percent,
                network_rx=rx,
                network_tx=tx,
            )
        except Exception as e:
            log.warning("metrics failed for container %s: %s", _short_id(container), e)
            return ServiceMetrics(name=name)

    def stack_metrics(self, stack_name: str) -> StackMetrics:
        containers = self._containers(stack_name)
        services = run_bounded(
            containers,
            lambda c: self._service_metrics(c, stack_name),
            self.max_workers,
        )
        return StackMetrics(name=stack_name, services=services)
