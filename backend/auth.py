import hmac
from datetime import datetime, timedelta, timezone
from fastapi import HTTPException, Header, status
from jose import JWTError, jwt

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ADMIN_USER, API_KEY, SECRET_KEY

ALGORITHM = "HS256"

PLATFORM_CALLER = "platform"


def create_access_token(subject: str, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return jwt.encode({"sub": subject, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _caller_from_api_key(x_api_key: str) -> str:
    if not API_KEY:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="API key not configured on this host",
        )
    if not hmac.compare_digest(x_api_key, API_KEY):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
    return PLATFORM_CALLER


def _caller_from_bearer(authorization: str) -> str:
    try:
        token_type, token = authorization.split()
    except ValueError:
        raise _unauthorized("Malformed Authorization header")
    if token_type.lower() != "bearer":
        raise _unauthorized("Invalid token type")

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise _unauthorized("Invalid token")

    username = payload.get("sub")
    if username is None or username != ADMIN_USER:
        raise _unauthorized("Invalid token")
    return username


async def get_current_user(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
):
    """
    Dependency for every stack route. Two kinds of callers:
    - the control platform, with the shared X-API-Key
    - an admin, with the bearer token from /api/login
    Whatever passes here is trusted by the stack services.
    """
    if x_api_key:
        return _caller_from_api_key(x_api_key)
    if authorization:
        return _caller_from_bearer(authorization)
    raise _unauthorized("Authorization header missing")
