"""FastAPI dependencies for API routes."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from guardsync.core.errors import (
    DeviceRevoked,
    GuardSyncError,
    InvalidCategory,
    InvalidDeviceKey,
    InvalidRuleConfig,
    NoActivePolicy,
    NotFoundError,
    RuleNotResolved,
)
from guardsync.engine.engine import Engine
from guardsync.server.database import Database
from guardsync.server.models import Device

# Security scheme
security = HTTPBearer(auto_error=False)

_UNPROCESSABLE = (InvalidCategory, InvalidRuleConfig, RuleNotResolved)


def get_engine(request: Request) -> Engine:
    """Get engine from app state."""
    engine: Engine = request.app.state.engine
    return engine


def get_db(request: Request) -> Database:
    """Get database from app state."""
    return get_engine(request).db


def http_error(e: Exception) -> HTTPException:
    """Map a domain error to the HTTP error returned to callers."""
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, InvalidDeviceKey):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(e, DeviceRevoked):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(e, (*_UNPROCESSABLE, ValueError)):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(e, NoActivePolicy):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="no active policy")
    elif isinstance(e, GuardSyncError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(e))


def require_api_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """Validate the guardian bearer token when one is configured."""
    expected = get_engine(request).config.api_token
    if expected is None:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_device(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Device:
    """Validate a device API key and return the Device."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return get_engine(request).devices.authenticate(credentials.credentials)
    except InvalidDeviceKey as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    except DeviceRevoked as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
