"""
SoulBridge Bridge API
Bridges identity proofs and tokens between chains and reports their progress.
"""

from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from soulbridge.services import OrchestrationFacade, get_facade


router = APIRouter()


class BridgeIdentityRequest(BaseModel):
    """Bridge identity proof request model."""
    did: str
    source_chain: str
    target_chain: str
    target_address: str


class BridgeTokensRequest(BaseModel):
    """Bridge tokens request model. ``amount`` is a decimal string, e.g. "10.5"."""
    did: str
    source_chain: str
    target_chain: str
    target_address: str
    token_address: str
    amount: str
    decimals: Optional[int] = None
    symbol: str = ""


@router.post("/bridge/identity")
async def bridge_identity(request: BridgeIdentityRequest,
                          facade: OrchestrationFacade = Depends(get_facade)):
    """Prove the identity's Soulbound token on another chain."""
    transfer = await facade.bridge_identity(
        request.did, request.source_chain, request.target_chain, request.target_address
    )
    return {"success": True, "data": transfer.to_dict()}


@router.post("/bridge/tokens")
async def bridge_tokens(request: BridgeTokensRequest,
                        facade: OrchestrationFacade = Depends(get_facade)):
    transfer = await facade.bridge_tokens(
        request.did,
        request.source_chain,
        request.target_chain,
        request.target_address,
        request.token_address,
        request.amount,
        decimals=request.decimals,
        symbol=request.symbol,
    )
    return {"success": True, "data": transfer.to_dict()}


@router.get("/bridge")
async def list_transfers(did: str, facade: OrchestrationFacade = Depends(get_facade)):
    """All bridge requests for a DID, newest first."""
    transfers = facade.list_bridge_requests(did)
    return {"success": True, "data": [t.to_dict() for t in transfers]}


@router.get("/bridge/{request_id}")
async def get_transfer(request_id: str, facade: OrchestrationFacade = Depends(get_facade)):
    return {"success": True, "data": facade.get_bridge_request(request_id).to_dict()}


@router.post("/bridge/{request_id}/refresh")
async def refresh_transfer(request_id: str, facade: OrchestrationFacade = Depends(get_facade)):
    transfer = await facade.refresh_bridge_request(request_id)
    return {"success": True, "data": transfer.to_dict()}


@router.post("/bridge/{request_id}/cancel")
async def cancel_transfer(request_id: str, facade: OrchestrationFacade = Depends(get_facade)):
    """Fail a request stuck before submission so its route can be used again."""
    transfer = await facade.cancel_bridge_request(request_id)
    return {"success": True, "data": transfer.to_dict()}
