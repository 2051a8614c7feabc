"""
Traefik settings: snapshot the running proxy, tear it down, recreate it with
one field changed.

The settings are read back from the live container's arguments/env with
regexes. That is lossy: anything that does not match comes back as None and
is logged, and the recreated proxy is built only from what was matched.
"""
import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

import config
from errors import NotFoundError
from services.runtime import docker_errors

log = logging.getLogger(__name__)

_EMAIL_ARG = re.compile(r"^--certificatesresolvers\.\w+\.acme\.email=(.+)$")
_DASHBOARD_RULE = re.compile(r"Host\(`([^`]+)`\)")
_TOKEN_ENV = "CF_DNS_API_TOKEN"


@dataclass(frozen=True)
class ProxySettings:
    email: Optional[str]
    domain: Optional[str]
    cloudflare_token: Optional[str] = None

    @property
    def dns_challenge(self) -> bool:
        return bool(self.cloudflare_token)


def parse_settings(attrs: Dict) -> ProxySettings:
    """
    Inspect attrs of the proxy container -> ProxySettings.
    """
    args: List[str] = attrs.get("Args") or []
    cfg = attrs.get("Config") or {}
    labels = cfg.get("Labels") or {}
    env = cfg.get("Env") or []

    email = None
    for arg in args:
        m = _EMAIL_ARG.match(arg)
        if m:
            email = m.group(1)
            break

    domain = None
    rule = labels.get("traefik.http.routers.dashboard.rule", "")
    m = _DASHBOARD_RULE.search(rule)
    if m:
        domain = m.group(1)

    token = None
    for item in env:
        key, _, value = item.partition("=")
        if key == _TOKEN_ENV and value:
            token = value

    if email is None:
        log.warning("Could not read ACME email from proxy arguments")
    if domain is None:
        log.warning("Could not read dashboard domain from proxy labels")

    return ProxySettings(email=email, domain=domain, cloudflare_token=token)


def build_command(settings: ProxySettings) -> List[str]:
    resolver = config.CERT_RESOLVER
    cmd = [
        "--api.dashboard=true",
        "--providers.docker=true",
        "--providers.docker.exposedbydefault=false",
        "--entrypoints.web.address=:80",
        f"--entrypoints.{config.ROUTING_ENTRYPOINT}.address=:443",
        f"--certificatesresolvers.{resolver}.acme.storage=/letsencrypt/acme.json",
    ]
    if settings.email:
        cmd.append(f"--certificatesresolvers.{resolver}.acme.email={settings.email}")

    if settings.dns_challenge:
        cmd += [
            f"--certificatesresolvers.{resolver}.acme.dnschallenge=true",
            f"--certificatesresolvers.{resolver}.acme.dnschallenge.provider=cloudflare",
            f"--certificatesresolvers.{resolver}.acme.dnschallenge.resolvers=1.1.1.1:53,8.8.8.8:53",
        ]
    else:
        cmd += [
            f"--certificatesresolvers.{resolver}.acme.httpchallenge=true",
            f"--certificatesresolvers.{resolver}.acme.httpchallenge.entrypoint=web",
        ]
    return cmd


def build_labels(settings: ProxySettings) -> Dict[str, str]:
    if not settings.domain:
        return {}
    return {
        "traefik.enable": "true",
        "traefik.http.routers.dashboard.rule": f"Host(`{settings.domain}`)",
        "traefik.http.routers.dashboard.entrypoints": config.ROUTING_ENTRYPOINT,
        "traefik.http.routers.dashboard.tls.certresolver": config.CERT_RESOLVER,
        "traefik.http.routers.dashboard.service": "api@internal",
    }


class ProxyManager:
    def __init__(self, runtime, container_name: str = config.PROXY_CONTAINER_NAME):
        self.runtime = runtime
        self.container_name = container_name

    def _container(self):
        with docker_errors(f"Proxy container {self.container_name}"):
            return self.runtime.client.containers.get(self.container_name)

    def snapshot(self) -> ProxySettings:
        container = self._container()
        return parse_settings(self.runtime.inspect(container))

    def recreate(self, settings: ProxySettings) -> None:
        client = self.runtime.client
        try:
            old = self._container()
        except NotFoundError:
            old = None

        if old is not None:
            log.info("Removing proxy container %s", self.container_name)
            with docker_errors("Removing proxy container"):
                old.remove(force=True)

        environment = {}
        if settings.cloudflare_token:
            environment[_TOKEN_ENV] = settings.cloudflare_token

        self.runtime.ensure_network(config.ROUTING_NETWORK)
        with docker_errors("Creating proxy container"):
            client.containers.run(
                config.PROXY_IMAGE,
                command=build_command(settings),
                name=self.container_name,
                detach=True,
                restart_policy={"Name": "unless-stopped"},
                ports={"80/tcp": 80, "443/tcp": 443},
                volumes={
                    "/var/run/docker.sock": {"bind": "/var/run/docker.sock", "mode": "ro"},
                    "traefik-letsencrypt": {"bind": "/letsencrypt", "mode": "rw"},
                },
                environment=environment,
                labels=build_labels(settings),
                network=config.ROUTING_NETWORK,
            )
        log.info("Proxy recreated (dns_challenge=%s)", settings.dns_challenge)

    def set_dns_challenge(self, cloudflare_token: Optional[str]) -> ProxySettings:
        """
        Snapshot -> change the challenge type -> recreate.
        """
        current = self.snapshot()
        updated = replace(current, cloudflare_token=cloudflare_token or None)
        self.recreate(updated)
        return updated
