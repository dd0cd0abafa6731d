"""
Recovery API Routes

Endpoints:
    POST /api/v1/recovery/assign   - Issue (or return) the caller's access code (bearer auth)
    POST /api/v1/recovery/recover  - Exchange a code for a recovery grant
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from ..security import require_caller

router = APIRouter(prefix="/api/v1/recovery", tags=["recovery"])


class AssignRequest(BaseModel):
    visitorId: str = Field(..., min_length=1)
    # Optional echo of the caller's uid; never trusted on its own
    uid: Optional[str] = None


class AssignResponse(BaseModel):
    code: str
    visitorId: str


class RecoverRequest(BaseModel):
    code: str


class GrantResponse(BaseModel):
    token: str
    visitorId: Optional[str] = None
    expiresAt: Optional[str] = None


@router.post("/assign", response_model=AssignResponse)
async def assign_code(
    body: AssignRequest, request: Request, caller: str = Depends(require_caller)
):
    if body.uid is not None and body.uid != caller:
        raise HTTPException(403, "Access codes can only be issued to the caller")
    service = request.app.state.codes
    if not await service.owns_visitor(caller, body.visitorId):
        raise HTTPException(403, f"Visitor {body.visitorId} is not anchored to the caller")
    code = await service.assign(caller, body.visitorId)
    return AssignResponse(code=code, visitorId=body.visitorId)


@router.post("/recover", response_model=GrantResponse)
async def recover_signal(body: RecoverRequest, request: Request):
    """RecoveryCodeInvalid surfaces as 404 via the app's exception handler."""
    service = request.app.state.codes
    grant = await service.recover(body.code)
    return GrantResponse(**grant.to_dict())
