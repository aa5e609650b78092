"""Middleware: photo access check via an optional API key."""

from __future__ import annotations

import secrets
from enum import StrEnum
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from photoclassify.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)

ACCESS_REQUIRED_DETAIL = (
    "Photo access required. Send 'Authorization: Bearer <key>' with the key configured in PHOTOCLASSIFY_API_KEY."
)
ACCESS_DENIED_DETAIL = "Photo access denied. The API key does not match PHOTOCLASSIFY_API_KEY."


class AccessStatus(StrEnum):
    AUTHORIZED = "authorized"
    DENIED = "denied"
    NOT_DETERMINED = "not_determined"


def access_status(settings: Settings, credentials: HTTPAuthorizationCredentials | None) -> AccessStatus:
    """Decide whether a caller may use the API.

    With no PHOTOCLASSIFY_API_KEY configured every caller is authorized. A
    caller that sends no key is not determined yet; one that sends the wrong
    key is denied.
    """
    if settings.api_key is None:
        return AccessStatus.AUTHORIZED
    if credentials is None:
        return AccessStatus.NOT_DETERMINED
    if secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        return AccessStatus.AUTHORIZED
    return AccessStatus.DENIED


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject callers without photo access.

    A missing key gets 401 with instructions on how to authenticate, a wrong
    key gets 403.
    """
    settings: Settings = request.app.state.settings
    match access_status(settings, credentials):
        case AccessStatus.AUTHORIZED:
            return
        case AccessStatus.NOT_DETERMINED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=ACCESS_REQUIRED_DETAIL,
                headers={"WWW-Authenticate": "Bearer"},
            )
        case AccessStatus.DENIED:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=ACCESS_DENIED_DETAIL)
