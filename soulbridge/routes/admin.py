"""
SoulBridge Admin API
Manual KYC review. Guarded by ``X-Admin-Token`` when ADMIN_API_TOKEN is set.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel

from soulbridge.config import config
from soulbridge.models import VerificationStatus
from soulbridge.services import OrchestrationFacade, get_facade


async def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    if config.ADMIN_API_TOKEN and x_admin_token != config.ADMIN_API_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required"
        )


router = APIRouter(dependencies=[Depends(require_admin)])


class ReviewRequest(BaseModel):
    """KYC review decision."""
    notes: str = ""


@router.get("/admin/kyc/verifications")
async def list_verifications(status: Optional[VerificationStatus] = None,
                             facade: OrchestrationFacade = Depends(get_facade)):
    """Verifications in the provider's review queue, optionally by status."""
    return {"success": True, "data": await facade.list_kyc_reviews(status)}


@router.post("/admin/kyc/approve/{request_id}")
async def approve_verification(request_id: str, request: ReviewRequest,
                               facade: OrchestrationFacade = Depends(get_facade)):
    verification = await facade.review_verification(request_id, True, request.notes)
    return {"success": True, "data": verification.to_dict()}


@router.post("/admin/kyc/reject/{request_id}")
async def reject_verification(request_id: str, request: ReviewRequest,
                              facade: OrchestrationFacade = Depends(get_facade)):
    verification = await facade.review_verification(request_id, False, request.notes)
    return {"success": True, "data": verification.to_dict()}
