"""
SoulBridge Credentials API
Verifiable credentials for identities holding a Soulbound token.
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from soulbridge.services import OrchestrationFacade, get_facade


router = APIRouter()


class IssueCredentialRequest(BaseModel):
    """Issue credential request model."""
    subject_did: str
    credential_type: str
    claims: Dict[str, Any] = Field(default_factory=dict)
    expiration_date: Optional[str] = None


class RevokeCredentialRequest(BaseModel):
    credential_hash: str
    reason: str = "Revoked by user"


class CredentialHashRequest(BaseModel):
    credential_hash: str


class CrossChainVerifyRequest(BaseModel):
    credential_hash: str
    target_chain: str


@router.post("/credential/issue")
async def issue_credential(request: IssueCredentialRequest,
                           facade: OrchestrationFacade = Depends(get_facade)):
    credential = await facade.credentials.issue(
        request.subject_did, request.credential_type, request.claims, request.expiration_date
    )
    return {"success": True, "data": credential}


@router.post("/credential/verify")
async def verify_credential(request: CredentialHashRequest,
                            facade: OrchestrationFacade = Depends(get_facade)):
    return {"success": True, "data": await facade.credentials.verify(request.credential_hash)}


@router.post("/credential/revoke")
async def revoke_credential(request: RevokeCredentialRequest,
                            facade: OrchestrationFacade = Depends(get_facade)):
    credential = await facade.credentials.revoke(request.credential_hash, request.reason)
    return {"success": True, "data": credential}


@router.post("/credential/verify-cross-chain")
async def verify_cross_chain(request: CrossChainVerifyRequest,
                             facade: OrchestrationFacade = Depends(get_facade)):
    """Check a credential against the token mirrored on another chain."""
    result = await facade.credentials.verify_cross_chain(request.credential_hash, request.target_chain)
    return {"success": True, "data": result}


@router.get("/credential/subject/{did}")
async def credentials_for_subject(did: str, status: Optional[str] = None,
                                  credential_type: Optional[str] = None,
                                  facade: OrchestrationFacade = Depends(get_facade)):
    credentials = await facade.credentials.list_for_subject(did, status, credential_type)
    return {"success": True, "data": credentials}


@router.get("/credential/sbt/{token_id}")
async def credentials_for_token(token_id: str, facade: OrchestrationFacade = Depends(get_facade)):
    return {"success": True, "data": await facade.credentials.list_for_token(token_id)}


@router.get("/credential/{credential_hash}")
async def get_credential(credential_hash: str, facade: OrchestrationFacade = Depends(get_facade)):
    return {"success": True, "data": await facade.credentials.get(credential_hash)}
