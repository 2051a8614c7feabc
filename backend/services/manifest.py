"""
Compose manifest rewriting.

The manifest is parsed into a plain nested dict (services are user supplied and
heterogeneous, so no fixed schema), then routing labels, environment and
resource limits are injected with targeted lookups before dumping back to YAML.
"""
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import yaml

import config
from models.stacks import MAIN_ROUTE_KEY, StackConfig

log = logging.getLogger(__name__)

DB_MARKERS = ("db", "database", "mysql", "postgres", "mongo")

GATEWAY_CONFIG_NAME = "kong.yml"
DOTENV_NAME = ".env"
STORAGE_LIMIT_LABEL = "peke.storage-limit"

_TEMPLATE_VAR = re.compile(r"\$\{(\w+)\}")
_FIRST_NUMBER = re.compile(r"\d+")
_DOTENV_NEEDS_QUOTES = re.compile(r"[\s\"'$]")


# --------------------------------------------------------------------------------------
# YAML loading
# --------------------------------------------------------------------------------------

class ComposeLoader(yaml.SafeLoader):
    """
    SafeLoader with YAML 1.2 core-schema scalars, the way docker compose reads
    manifests: "2222:22" stays a string (not base 60), yes/no/on/off stay strings.
    """


_YAML11_SCALAR_TAGS = ("tag:yaml.org,2002:bool", "tag:yaml.org,2002:int", "tag:yaml.org,2002:float")

ComposeLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in _YAML11_SCALAR_TAGS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
ComposeLoader.add_implicit_resolver(
    "tag:yaml.org,2002:bool",
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list("tTfF"),
)
ComposeLoader.add_implicit_resolver(
    "tag:yaml.org,2002:int",
    re.compile(r"^(?:[-+]?[0-9]+|0o[0-7]+|0x[0-9a-fA-F]+)$"),
    list("-+0123456789"),
)
ComposeLoader.add_implicit_resolver(
    "tag:yaml.org,2002:float",
    re.compile(
        r"^(?:[-+]?(?:\.[0-9]+|[0-9]+(?:\.[0-9]*)?)(?:[eE][-+]?[0-9]+)?"
        r"|[-+]?\.(?:inf|Inf|INF)|\.(?:nan|NaN|NAN))$"
    ),
    list("-+0123456789."),
)


def _construct_int(loader, node) -> int:
    # "010" is ten here, not octal
    value = loader.construct_scalar(node)
    if value.startswith(("0o", "0x")):
        return int(value, 0)
    return int(value)


ComposeLoader.add_constructor("tag:yaml.org,2002:int", _construct_int)


@dataclass
class SideFile:
    name: str
    content: str
    mode: int = 0o644


# --------------------------------------------------------------------------------------
# Small helpers
# --------------------------------------------------------------------------------------

def sanitize(value: str) -> str:
    """
    "My App.v2" -> "my-app-v2" (safe as a Traefik router name)
    """
    cleaned = re.sub(r"[^a-z0-9-]+", "-", value.lower())
    return cleaned.strip("-")


def is_database_service(service_name: str) -> bool:
    lowered = service_name.lower()
    return any(marker in lowered for marker in DB_MARKERS)


def resolve_volume_path(cfg: StackConfig) -> str:
    """
    volume_path_template "/data/${INSTANCE_ID}" + environment -> "/data/abc".
    Unknown variables are left as-is.
    """
    if not cfg.volume_path_template:
        return cfg.volume_ref

    def _sub(match):
        return cfg.environment.get(match.group(1), match.group(0))

    return _TEMPLATE_VAR.sub(_sub, cfg.volume_path_template)


def _container_port(entry: Any) -> Optional[int]:
    """
    Container side of a single `ports` entry.
    "8080:80" -> 80, "127.0.0.1:8080:80/tcp" -> 80, "3000-3001" -> 3000,
    {"target": 80, "published": 8080} -> 80, 80 -> 80
    """
    if isinstance(entry, dict):
        value = entry.get("target", entry.get("container"))
        if value is None:
            return None
        return _container_port(value)

    if isinstance(entry, bool):
        return None
    if isinstance(entry, int):
        return entry

    if isinstance(entry, str):
        container_side = entry.split("/")[0].rsplit(":", 1)[-1]
        m = _FIRST_NUMBER.search(container_side)
        if m:
            return int(m.group(0))
    return None


def detect_routing_port(service_name: str, service: Dict[str, Any], cfg: StackConfig) -> int:
    """
    Port Traefik should proxy to. Strict priority, first match wins:
    1. routing_config[service].internal_port (> 0)
    2. first container port in `ports`
    3. first `expose` entry
    4. cfg.port
    """
    entry = cfg.routing_config.get(service_name)
    if entry is not None and entry.internal_port and entry.internal_port > 0:
        return entry.internal_port

    for key in ("ports", "expose"):
        declared = service.get(key)
        if isinstance(declared, list) and declared:
            port = _container_port(declared[0])
            if port:
                return port

    log.warning(
        "No port found for service %s, falling back to allocated port %s "
        "(this rarely matches the real service port)",
        service_name, cfg.port,
    )
    return cfg.port


def _labels_as_dict(service: Dict[str, Any]) -> Dict[str, Any]:
    labels = service.get("labels")
    if isinstance(labels, dict):
        return labels

    normalized: Dict[str, Any] = {}
    for item in labels or []:
        key, sep, value = str(item).partition("=")
        normalized[key] = value if sep else ""
    service["labels"] = normalized
    return normalized


def _environment_as_dict(service: Dict[str, Any]) -> Dict[str, Any]:
    env = service.get("environment")
    if isinstance(env, dict):
        return env

    normalized: Dict[str, Any] = {}
    for item in env or []:
        key, sep, value = str(item).partition("=")
        if not sep or not key:
            continue
        normalized[key] = value
    service["environment"] = normalized
    return normalized


def _router_labels(router: str, host: str, port: int) -> Dict[str, str]:
    prefix = f"traefik.http.routers.{router}"
    return {
        f"{prefix}.rule": f"Host(`{host}`)",
        f"{prefix}.entrypoints": config.ROUTING_ENTRYPOINT,
        f"{prefix}.tls": "true",
        f"{prefix}.tls.certresolver": config.CERT_RESOLVER,
        f"{prefix}.service": router,
        f"traefik.http.services.{router}.loadbalancer.server.port": str(port),
    }


def _attach_routing_network(service: Dict[str, Any]) -> None:
    if "network_mode" in service:
        return

    networks = service.get("networks")
    if networks is None:
        # declaring networks drops the implicit default one, keep it
        service["networks"] = ["default", config.ROUTING_NETWORK]
    elif isinstance(networks, dict):
        networks.setdefault(config.ROUTING_NETWORK, None)
    elif config.ROUTING_NETWORK not in networks:
        networks.append(config.ROUTING_NETWORK)


# --------------------------------------------------------------------------------------
# Injections
# --------------------------------------------------------------------------------------

def inject_routing(doc: Dict[str, Any], cfg: StackConfig) -> List[str]:
    """
    Add Traefik labels to every routable service. Returns the touched services.
    """
    services = doc.get("services") or {}
    sub = sanitize(cfg.subdomain)
    touched: List[str] = []

    for name, service in services.items():
        if name == MAIN_ROUTE_KEY or not isinstance(service, dict):
            continue

        entry = cfg.routing_config.get(name)
        if entry is not None and entry.enabled is False:
            log.info("Routing disabled for service %s", name)
            continue
        if entry is None and is_database_service(name):
            log.info("Skipping routing for database service %s", name)
            continue

        port = detect_routing_port(name, service, cfg)
        labels = _labels_as_dict(service)
        labels["traefik.enable"] = "true"
        labels["traefik.docker.network"] = config.ROUTING_NETWORK
        labels.update(_router_labels(f"{sub}-{name}", f"{name}.{cfg.subdomain}.{cfg.domain}", port))
        _attach_routing_network(service)
        touched.append(name)

    main = cfg.routing_config.get(MAIN_ROUTE_KEY)
    if main is not None and main.service_name and main.internal_port:
        service = services.get(main.service_name)
        if isinstance(service, dict):
            labels = _labels_as_dict(service)
            labels["traefik.enable"] = "true"
            labels["traefik.docker.network"] = config.ROUTING_NETWORK
            labels.update(_router_labels(sub, f"{cfg.subdomain}.{cfg.domain}", main.internal_port))
            _attach_routing_network(service)
            if main.service_name not in touched:
                touched.append(main.service_name)
        else:
            log.warning("Main route points to unknown service %s", main.service_name)

    if touched:
        networks = doc.get("networks")
        if not isinstance(networks, dict):
            networks = {}
            doc["networks"] = networks
        if config.ROUTING_NETWORK not in networks:
            networks[config.ROUTING_NETWORK] = {"external": True}

    return touched


def inject_environment(doc: Dict[str, Any], environment: Dict[str, str]) -> None:
    """
    List-form environment -> mapping (bare names dropped) on every service,
    then caller values on top.
    """
    for service in (doc.get("services") or {}).values():
        if not isinstance(service, dict):
            continue
        if not environment and "environment" not in service:
            continue
        env = _environment_as_dict(service)
        env.update(environment)


def inject_resources(doc: Dict[str, Any], cfg: StackConfig) -> None:
    for service in (doc.get("services") or {}).values():
        if not isinstance(service, dict):
            continue

        cpu_limit = cfg.cpu_limit if cfg.cpu_limit and cfg.cpu_limit > 0 else None
        if cpu_limit or cfg.memory_limit or cfg.memory_reservation:
            resources = service.setdefault("deploy", {}).setdefault("resources", {})
            if cpu_limit:
                resources.setdefault("limits", {})["cpus"] = float(cpu_limit)
            if cfg.memory_limit:
                resources.setdefault("limits", {})["memory"] = cfg.memory_limit
            if cfg.memory_reservation:
                resources.setdefault("reservations", {})["memory"] = cfg.memory_reservation

        if cfg.storage_limit:
            # recorded only, nothing enforces it
            _labels_as_dict(service)[STORAGE_LIMIT_LABEL] = cfg.storage_limit


# --------------------------------------------------------------------------------------
# Side files
# --------------------------------------------------------------------------------------

def _dotenv_value(value: str) -> str:
    if not _DOTENV_NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_dotenv(environment: Dict[str, str]) -> str:
    lines = [f"{key}={_dotenv_value(str(value))}" for key, value in environment.items()]
    return "\n".join(lines) + "\n"


def render_gateway_config(environment: Dict[str, str]) -> str:
    """
    Default Kong declarative config for the Supabase-style template:
    anon + service_role consumers and key-auth protected upstream routes.
    """
    anon_key = environment.get("ANON_KEY", "${SUPABASE_ANON_KEY}")
    service_key = environment.get("SERVICE_ROLE_KEY", "${SUPABASE_SERVICE_KEY}")

    def _route(name: str, url: str, path: str) -> Dict[str, Any]:
        return {
            "name": name,
            "url": url,
            "routes": [{"name": name, "strip_path": True, "paths": [path]}],
            "plugins": [
                {"name": "cors"},
                {"name": "key-auth", "config": {"hide_credentials": False}},
                {"name": "acl", "config": {"hide_groups_header": True, "allow": ["admin", "anon"]}},
            ],
        }

    doc = {
        "_format_version": "2.1",
        "_transform": True,
        "consumers": [
            {"username": "anon", "keyauth_credentials": [{"key": anon_key}]},
            {"username": "service_role", "keyauth_credentials": [{"key": service_key}]},
        ],
        "acls": [
            {"consumer": "anon", "group": "anon"},
            {"consumer": "service_role", "group": "admin"},
        ],
        "services": [
            _route("auth-v1", "http://auth:9999/", "/auth/v1/"),
            _route("rest-v1", "http://rest:3000/", "/rest/v1/"),
            _route("realtime-v1", "http://realtime:4000/socket/", "/realtime/v1/"),
            _route("storage-v1", "http://storage:5000/", "/storage/v1/"),
            _route("functions-v1", "http://functions:9000/", "/functions/v1/"),
        ],
    }
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def build_side_files(manifest_text: str, cfg: StackConfig, stack_dir: Optional[str]) -> List[SideFile]:
    files: List[SideFile] = []

    if GATEWAY_CONFIG_NAME in manifest_text:
        existing = stack_dir and os.path.exists(os.path.join(stack_dir, GATEWAY_CONFIG_NAME))
        if not existing:
            files.append(SideFile(GATEWAY_CONFIG_NAME, render_gateway_config(cfg.environment)))

    if cfg.environment:
        files.append(SideFile(DOTENV_NAME, render_dotenv(cfg.environment), mode=0o600))

    return files


# --------------------------------------------------------------------------------------
# Entry point
# --------------------------------------------------------------------------------------

def parse_manifest(manifest_text: str) -> Optional[Dict[str, Any]]:
    """
    YAML text -> dict, or None when it is not a parsable mapping
    (e.g. unresolved template syntax).
    """
    try:
        doc = yaml.load(manifest_text, Loader=ComposeLoader)
    except yaml.YAMLError as exc:
        log.warning("Manifest is not valid YAML, using it unchanged: %s", exc)
        return None
    if not isinstance(doc, dict):
        log.warning("Manifest is not a mapping, using it unchanged")
        return None
    return doc


def transform(manifest_text: str, cfg: StackConfig,
              stack_dir: Optional[str] = None) -> Tuple[str, List[SideFile]]:
    """
    Returns (final manifest text, side files). Never raises for unparsable
    manifests: they are passed through untouched.
    """
    side_files = build_side_files(manifest_text, cfg, stack_dir)

    doc = parse_manifest(manifest_text)
    if doc is None:
        return manifest_text, side_files

    if cfg.routing_enabled:
        touched = inject_routing(doc, cfg)
        log.info("Routing injected for %s: %s", cfg.name, ", ".join(touched) or "none")
    inject_environment(doc, cfg.environment)
    inject_resources(doc, cfg)

    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False), side_files
