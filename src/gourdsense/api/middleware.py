"""Request guards: API key authentication and upload size limits."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from gourdsense.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)

# Room for multipart boundaries and form fields around the image itself.
_MULTIPART_OVERHEAD = 64 * 1024


def _settings_of(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require 'Authorization: Bearer <key>' when GOURDSENSE_API_KEY is set.

    Without a configured key every request passes.
    """
    expected = _settings_of(request).api_key
    if expected is None:
        return

    presented = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def reject_oversized_upload(request: Request) -> None:
    """Refuse uploads whose declared length cannot fit the image limit.

    The route still checks the uploaded file itself; this catches bodies
    that are too large on their face, whatever their form layout.
    """
    declared = request.headers.get("content-length")
    if declared is None or not declared.isdigit():
        return
    limit = _settings_of(request).max_file_size
    if int(declared) > limit + _MULTIPART_OVERHEAD:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request body exceeds the {limit} byte upload limit",
        )
