from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional

# no "_": containers are found by the "{name}_" prefix, so "a" would match "a_b"
STACK_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9.-]*$"

# reserved routing_config key for the top-level domain route
MAIN_ROUTE_KEY = "_main"


class RoutingEntry(BaseModel):
    # regular entries: internal_port + enabled
    # "_main" entry:   service_name + internal_port
    internal_port: Optional[int] = None
    enabled: bool = True
    service_name: Optional[str] = None


class StackConfig(BaseModel):
    name: str = Field(..., min_length=1, max_length=128, pattern=STACK_NAME_PATTERN)
    manifest: str = Field(..., min_length=1)   # raw docker-compose YAML
    volume_ref: str = Field(..., min_length=1)  # named volume or absolute host path
    volume_path_template: Optional[str] = None  # "/data/${INSTANCE_ID}"
    environment: Dict[str, str] = Field(default_factory=dict)

    # routing
    use_routing: bool = False
    domain: Optional[str] = None
    subdomain: Optional[str] = None
    routing_config: Dict[str, RoutingEntry] = Field(default_factory=dict)

    # resources
    cpu_limit: Optional[float] = None
    memory_limit: Optional[str] = None        # "512m"
    memory_reservation: Optional[str] = None
    storage_limit: Optional[str] = None       # advisory only

    port: int = Field(..., gt=0, lt=65536)

    @property
    def routing_enabled(self) -> bool:
        return bool(self.use_routing and self.domain and self.subdomain)


class ServiceState(BaseModel):
    name: str
    status: Literal["running", "stopped", "error"]
    ready: bool


class StackInfo(BaseModel):
    name: str
    status: Literal["running", "partial", "stopped", "unknown"]
    services: List[ServiceState] = Field(default_factory=list)


class ServiceMetrics(BaseModel):
    name: str
    cpu_percent: float = 0.0
    memory_used: int = 0
    memory_limit: int = 0      # 0 = unlimited
    memory_percent: float = 0.0
    network_rx: int = 0
    network_tx: int = 0


class StackMetrics(BaseModel):
    name: str
    services: List[ServiceMetrics]


class StackListResponse(BaseModel):
    stacks: List[str]


class StackLogsResponse(BaseModel):
    name: str
    lines: List[str]


class StackServicesResponse(BaseModel):
    name: str
    services: List[str]


class ActionResponse(BaseModel):
    success: bool = True
    message: str


class BatchRequest(BaseModel):
    names: List[str] = Field(..., min_length=1)


class BatchItemResult(BaseModel):
    name: str
    success: bool
    error: Optional[str] = None


class BatchResponse(BaseModel):
    action: str
    results: List[BatchItemResult]


class ProxySettingsResponse(BaseModel):
    email: Optional[str]
    domain: Optional[str]
    dns_challenge: bool


class DnsChallengeRequest(BaseModel):
    cloudflare_token: Optional[str] = None
