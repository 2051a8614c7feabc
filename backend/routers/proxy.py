from typing import Optional

from fastapi import APIRouter, Depends

from auth import get_current_user
from models.stacks import DnsChallengeRequest, ProxySettingsResponse
from routers.stacks import get_manager
from services.proxy import ProxyManager, ProxySettings
from services.stacks import StackManager

router = APIRouter(
    prefix="/api/proxy",
    tags=["proxy"],
    dependencies=[Depends(get_current_user)],
)

_proxy: Optional[ProxyManager] = None


def get_proxy(manager: StackManager = Depends(get_manager)) -> ProxyManager:
    # shares the docker client of the stack manager
    global _proxy
    if _proxy is None:
        _proxy = ProxyManager(manager.runtime)
    return _proxy


def _as_response(settings: ProxySettings) -> dict:
    return {
        "email": settings.email,
        "domain": settings.domain,
        "dns_challenge": settings.dns_challenge,
    }


@router.get("", response_model=ProxySettingsResponse)
def get_proxy_settings(proxy: ProxyManager = Depends(get_proxy)):
    return _as_response(proxy.snapshot())


@router.post("/dns-challenge", response_model=ProxySettingsResponse)
def set_dns_challenge(body: DnsChallengeRequest, proxy: ProxyManager = Depends(get_proxy)):
    """
    Switch the ACME challenge: Cloudflare DNS-01 when a token is given,
    HTTP-01 otherwise. The proxy container is recreated.
    """
    return _as_response(proxy.set_dns_challenge(body.cloudflare_token))
