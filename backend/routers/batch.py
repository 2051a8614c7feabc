from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status

import config
from auth import get_current_user
from models.stacks import BatchItemResult, BatchRequest, BatchResponse
from routers.stacks import get_manager
from services.executor import run_bounded
from services.stacks import StackManager

router = APIRouter(
    prefix="/api/batch",
    tags=["batch"],
    dependencies=[Depends(get_current_user)],
)


@router.post("/stacks/{action}", response_model=BatchResponse)
def batch_stack_action(
    action: Literal["start", "stop", "restart", "update", "remove"],
    body: BatchRequest,
    manager: StackManager = Depends(get_manager),
):
    """
    Run one lifecycle action over many stacks, BATCH_CONCURRENCY at a time.
    Every stack gets its own result; one failure does not stop the others.
    """
    if len(body.names) > config.BATCH_MAX_ITEMS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {config.BATCH_MAX_ITEMS} stacks per batch",
        )

    def _one(name: str) -> BatchItemResult:
        try:
            getattr(manager, action)(name)
            return BatchItemResult(name=name, success=True)
        except Exception as e:
            return BatchItemResult(name=name, success=False, error=str(e))

    results = run_bounded(body.names, _one, config.BATCH_CONCURRENCY)
    return {"action": action, "results": results}
