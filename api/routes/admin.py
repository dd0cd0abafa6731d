"""
Admin API Routes

Endpoints:
    GET    /api/v1/progress/{collection}/{doc_id}  - Raw progress document (admin)
    DELETE /api/v1/identities/{uid}                - Erase everything for a uid (self or admin)
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from coherence_sync import config as cfg
from storage.migrate import erase_identity

from ..security import is_admin, require_admin, require_caller

router = APIRouter(prefix="/api/v1", tags=["admin"])

READABLE_COLLECTIONS = (
    cfg.ADMIN_COLLECTION,
    cfg.OBSERVER_COLLECTION,
    cfg.MAPPING_COLLECTION,
)


@router.get("/progress/{collection}/{doc_id}")
async def get_progress(
    collection: str, doc_id: str, request: Request, caller: str = Depends(require_admin)
):
    if collection not in READABLE_COLLECTIONS:
        raise HTTPException(400, f"Unknown collection: {collection}")
    doc = await request.app.state.store.get(collection, doc_id)
    if doc is None:
        raise HTTPException(404, f"No document at {collection}/{doc_id}")
    return {"collection": collection, "id": doc_id, "document": doc}


@router.delete("/identities/{uid}")
async def erase(uid: str, request: Request, caller: str = Depends(require_caller)):
    if caller != uid and not is_admin(request, caller):
        raise HTTPException(403, "Only the identity itself or an admin may erase it")
    removed = await erase_identity(request.app.state.store, uid)
    return {"uid": uid, "removed": removed, "erased": any(removed.values())}
