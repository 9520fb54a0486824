"""
SoulBridge Verification API
Starts KYC/KYB verifications and receives provider SDK callbacks.
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from soulbridge.models import VerificationLevel
from soulbridge.services import OrchestrationFacade, get_facade
from soulbridge.services.verification_provider import ProviderEvent


router = APIRouter()


class StartVerificationRequest(BaseModel):
    """Start verification request model."""
    did: str
    level: VerificationLevel = VerificationLevel.BASIC
    applicant: Dict[str, Any] = Field(default_factory=dict)


class ProviderEventRequest(BaseModel):
    """Provider SDK callback forwarded by the client."""
    provider_ref: str
    kind: str  # "started", "complete" or "error"
    detail: Optional[str] = None


@router.post("/verification")
async def start_verification(request: StartVerificationRequest,
                             facade: OrchestrationFacade = Depends(get_facade)):
    """
    Start a verification and return the provider SDK session.

    Status is then polled in the background until APPROVED or REJECTED.
    """
    verification, session = await facade.start_verification(
        request.did, request.level, request.applicant
    )
    return {
        "success": True,
        "data": {"request": verification.to_dict(), "session": session.to_dict()},
    }


@router.get("/verification/{request_id}")
async def get_verification(request_id: str, facade: OrchestrationFacade = Depends(get_facade)):
    return {"success": True, "data": facade.get_verification(request_id).to_dict()}


@router.post("/verification/{request_id}/refresh")
async def refresh_verification(request_id: str, facade: OrchestrationFacade = Depends(get_facade)):
    """Poll the provider now instead of waiting for the next tick."""
    verification = await facade.refresh_verification(request_id)
    return {"success": True, "data": verification.to_dict()}


@router.post("/verification/events")
async def provider_event(request: ProviderEventRequest,
                         facade: OrchestrationFacade = Depends(get_facade)):
    handled = await facade.handle_provider_event(
        ProviderEvent(request.provider_ref, request.kind, request.detail)
    )
    return {"success": True, "data": {"handled": handled}}
