"""
API Caller Authentication: bearer tokens signed by the app's TokenMinter.

Routes that act on an identity resolve the caller's uid from
`Authorization: Bearer <token>` and never from the request body.
Missing or bad tokens fail closed with 401.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request

from coherence_sync.errors import AuthenticationError

log = logging.getLogger("api.security")

CHALLENGE = {"WWW-Authenticate": "Bearer"}


def bearer_token(request: Request) -> Optional[str]:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


async def require_caller(request: Request) -> str:
    """Dependency: the verified uid of the caller."""
    token = bearer_token(request)
    if token is None:
        raise HTTPException(401, "Authentication required", headers=CHALLENGE)
    try:
        return request.app.state.minter.verify(token)
    except AuthenticationError as exc:
        log.warning(f"Rejected token on {request.url.path}: {exc}")
        raise HTTPException(401, "Invalid or expired token", headers=CHALLENGE) from exc


def is_admin(request: Request, uid: str) -> bool:
    return uid in request.app.state.admin_uids


async def require_admin(request: Request) -> str:
    uid = await require_caller(request)
    if not is_admin(request, uid):
        raise HTTPException(403, "Admin privileges required")
    return uid
