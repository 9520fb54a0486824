"""
SoulBridge Identity API
Wallet connection, DID creation, address linking and Soulbound token issuance.
"""

from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from soulbridge.services import OrchestrationFacade, get_facade
from soulbridge.services.link_proof import link_proof


router = APIRouter()


class CreateIdentityRequest(BaseModel):
    """Create identity request model."""
    chain: str


class LinkAddressRequest(BaseModel):
    """Link a chain address. Without a signature the server wallet signs."""
    chain: str
    address: Optional[str] = None
    signature: Optional[str] = None


class ConfirmAddressRequest(BaseModel):
    chain: str
    address: str


@router.post("/wallets/{chain}/connect")
async def connect_wallet(chain: str, facade: OrchestrationFacade = Depends(get_facade)):
    """Connect the wallet for a chain and return its account."""
    account = await facade.connect_wallet(chain)
    return {"success": True, "data": {"chain": chain, "account": account}}


@router.get("/link-challenge")
async def get_link_challenge(chain: str, address: str):
    """Exact message a wallet must sign to link ``address`` on ``chain``."""
    return {"success": True, "data": {"message": link_proof.build_challenge(chain, address)}}


@router.post("/identity")
async def create_identity(request: CreateIdentityRequest,
                          facade: OrchestrationFacade = Depends(get_facade)):
    """
    Create (or return) the identity owned by the account connected on a chain.

    Args:
        request: Chain whose connected account owns the identity
    """
    identity = await facade.create_identity(request.chain)
    return {"success": True, "data": identity.to_dict()}


@router.get("/identity/{did}")
async def get_identity(did: str, facade: OrchestrationFacade = Depends(get_facade)):
    return {"success": True, "data": facade.get_identity(did).to_dict()}


@router.get("/identity/{did}/document")
async def resolve_did(did: str, facade: OrchestrationFacade = Depends(get_facade)):
    """W3C DID document with the verified chain accounts as verification methods."""
    return {"success": True, "data": facade.resolve_did(did)}


@router.post("/identity/{did}/link")
async def link_address(did: str, request: LinkAddressRequest,
                       facade: OrchestrationFacade = Depends(get_facade)):
    identity = await facade.link_address(did, request.chain, request.address, request.signature)
    return {"success": True, "data": identity.to_dict()}


@router.post("/identity/{did}/confirm")
async def confirm_address(did: str, request: ConfirmAddressRequest,
                          facade: OrchestrationFacade = Depends(get_facade)):
    identity = await facade.confirm_address(did, request.chain, request.address)
    return {"success": True, "data": identity.to_dict()}


@router.post("/identity/{did}/token")
async def issue_token(did: str, facade: OrchestrationFacade = Depends(get_facade)):
    """Issue the Soulbound token once verification is approved."""
    identity = await facade.issue_identity_token(did)
    return {"success": True, "data": identity.to_dict()}


@router.post("/identity/{did}/token/resolve")
async def resolve_token(did: str, facade: OrchestrationFacade = Depends(get_facade)):
    """Settle an issuance whose transaction outcome was unknown."""
    identity = await facade.resolve_issuance(did)
    return {"success": True, "data": identity.to_dict()}


@router.get("/token/{token_id}")
async def get_token_info(token_id: str, facade: OrchestrationFacade = Depends(get_facade)):
    return {"success": True, "data": await facade.get_token_info(token_id)}


@router.post("/identity/{did}/deactivate")
async def deactivate_identity(did: str, facade: OrchestrationFacade = Depends(get_facade)):
    identity = await facade.deactivate_identity(did)
    return {"success": True, "data": identity.to_dict()}


@router.post("/session/resume")
async def resume_session(facade: OrchestrationFacade = Depends(get_facade)):
    """Restore the cached session after revalidating it with the backend."""
    identity = await facade.resume()
    return {"success": True, "data": identity.to_dict() if identity else None}
