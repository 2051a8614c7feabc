import logging

from fastapi import (
    FastAPI,
    Form,
    HTTPException,
    Request,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from auth import create_access_token
from errors import DeploymentError, StackError
from routers.batch import router as batch_router
from routers.proxy import router as proxy_router
from routers.stacks import router as stacks_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

# --- FastAPI App Initialization ---
app = FastAPI(title="Peke Stacks")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # in production limit to the panel domain
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stacks_router)
app.include_router(batch_router)
app.include_router(proxy_router)


@app.exception_handler(StackError)
async def stack_error_handler(request: Request, exc: StackError):
    """
    StackError -> {"success": false, "error": <kind>, "message": ...}
    """
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        log.info("%s %s rejected: %s", request.method, request.url.path, exc.message)

    body = {
        "success": False,
        "error": type(exc).__name__,
        "message": exc.message,
    }
    if isinstance(exc, DeploymentError):
        body["reason"] = exc.reason
        body["output"] = exc.output
    return JSONResponse(status_code=exc.status_code, content=body)


@app.post("/api/login")
async def login_for_access_token(username: str = Form(...), password: str = Form(...)):
    if not (username == config.ADMIN_USER and password == config.ADMIN_PASSWORD):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
        )
    return {"access_token": create_access_token(username), "token_type": "bearer"}


@app.get("/healthz")
def health_check():
    """
    Health check para monitoreo externo.
    """
    return {"status": "ok"}
