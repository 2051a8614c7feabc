from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from auth import get_current_user
from models.stacks import (
    ActionResponse,
    StackConfig,
    StackInfo,
    StackListResponse,
    StackLogsResponse,
    StackMetrics,
    StackServicesResponse,
)
from services.stacks import StackManager

router = APIRouter(
    prefix="/api/stacks",
    tags=["stacks"],
    dependencies=[Depends(get_current_user)],
    responses={404: {"description": "Not found"}},
)

_manager: Optional[StackManager] = None


def get_manager() -> StackManager:
    """
    One StackManager per process; the docker client inside it is created on
    first use.
    """
    global _manager
    if _manager is None:
        _manager = StackManager()
    return _manager


# Routes are plain `def`: compose commands block (up to 5 minutes for `up`),
# FastAPI runs them in its threadpool.

@router.get("", response_model=StackListResponse)
def list_stacks(manager: StackManager = Depends(get_manager)):
    return {"stacks": manager.list_stacks()}


@router.post("", response_model=StackInfo, status_code=status.HTTP_201_CREATED)
def create_stack(cfg: StackConfig, manager: StackManager = Depends(get_manager)):
    """
    Render the manifest, write it to the stack directory and `up -d` it.
    A failed deployment is rolled back before the error is returned.
    """
    return manager.create(cfg)


@router.post("/{name}/{action}", response_model=ActionResponse)
def stack_action(
    name: str,
    action: Literal["start", "stop", "restart", "update"],
    manager: StackManager = Depends(get_manager),
):
    if action == "update":
        manager.update(name)
    else:
        getattr(manager, action)(name)
    return {"message": f"Stack {name}: {action} done"}


@router.post("/{name}/services/{service}/{action}", response_model=ActionResponse)
def service_action(
    name: str,
    service: str,
    action: Literal["start", "stop", "restart"],
    manager: StackManager = Depends(get_manager),
):
    getattr(manager, action)(name, service)
    return {"message": f"Service {service} in stack {name}: {action} done"}


@router.delete("/{name}", response_model=ActionResponse)
def remove_stack(
    name: str,
    remove_volumes: bool = False,
    manager: StackManager = Depends(get_manager),
):
    manager.remove(name, remove_volumes=remove_volumes)
    return {"message": f"Stack {name} removed"}


@router.get("/{name}/status", response_model=StackInfo)
def stack_status(name: str, manager: StackManager = Depends(get_manager)):
    return manager.status(name)


@router.get("/{name}/metrics", response_model=StackMetrics)
def stack_metrics(name: str, manager: StackManager = Depends(get_manager)):
    return manager.metrics(name)


@router.get("/{name}/logs", response_model=StackLogsResponse)
def stack_logs(
    name: str,
    lines: Optional[int] = Query(default=None, gt=0, le=10000),
    service: Optional[str] = None,
    manager: StackManager = Depends(get_manager),
):
    return {"name": name, "lines": manager.logs(name, lines=lines, service=service)}


@router.get("/{name}/services", response_model=StackServicesResponse)
def stack_services(name: str, manager: StackManager = Depends(get_manager)):
    return {"name": name, "services": manager.services(name)}
