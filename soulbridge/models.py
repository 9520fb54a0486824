"""
SoulBridge Domain Models
Identity aggregate, verification and bridge requests, and their state machines.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from soulbridge.amounts import from_base_units
from soulbridge.config import config
from soulbridge.networks import NETWORKS


def now() -> float:
    return time.time()


def new_request_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def tx_url(chain: str, tx_hash: Optional[str]) -> Optional[str]:
    network = NETWORKS.get(chain)
    if network is None or not tx_hash:
        return None
    return config.get_tx_url(network, tx_hash)


def address_url(chain: str, address: str) -> Optional[str]:
    network = NETWORKS.get(chain)
    if network is None:
        return None
    return config.get_address_url(network, address)


# ============ Verification ============

class VerificationLevel(str, Enum):
    BASIC = "BASIC"
    ADVANCED = "ADVANCED"
    BUSINESS = "BUSINESS"


class VerificationStatus(str, Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_active(self) -> bool:
        return self in (VerificationStatus.PENDING, VerificationStatus.IN_PROGRESS)

    @property
    def is_terminal(self) -> bool:
        return self in (VerificationStatus.APPROVED, VerificationStatus.REJECTED)


VERIFICATION_TRANSITIONS = {
    VerificationStatus.NONE: {VerificationStatus.PENDING},
    VerificationStatus.PENDING: {
        VerificationStatus.IN_PROGRESS,
        VerificationStatus.APPROVED,
        VerificationStatus.REJECTED,
    },
    VerificationStatus.IN_PROGRESS: {VerificationStatus.APPROVED, VerificationStatus.REJECTED},
    VerificationStatus.REJECTED: {VerificationStatus.PENDING},
    VerificationStatus.APPROVED: set(),
}


# ============ Bridge ============

class BridgeStatus(str, Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    RELAYING = "RELAYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (BridgeStatus.COMPLETED, BridgeStatus.FAILED)


BRIDGE_TRANSITIONS = {
    BridgeStatus.CREATED: {BridgeStatus.SUBMITTED, BridgeStatus.FAILED},
    BridgeStatus.SUBMITTED: {BridgeStatus.RELAYING, BridgeStatus.FAILED},
    BridgeStatus.RELAYING: {BridgeStatus.COMPLETED, BridgeStatus.FAILED},
    BridgeStatus.COMPLETED: set(),
    BridgeStatus.FAILED: set(),
}


@dataclass(frozen=True)
class StatusChange:
    """Emitted to listeners on every real state transition."""
    request_id: str
    did: str
    old: str
    new: str
    at: float = field(default_factory=now)


# ============ Identity ============

@dataclass
class ChainIdentity:
    chain_id: str
    address: str
    is_verified: bool = False
    linked_at: float = field(default_factory=now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "address": self.address,
            "isVerified": self.is_verified,
            "linkedAt": self.linked_at,
            "explorerUrl": address_url(self.chain_id, self.address),
        }


@dataclass
class Identity:
    did: str
    owner_address: str
    owner_chain: str
    token_id: Optional[str] = None
    chain_identities: List[ChainIdentity] = field(default_factory=list)
    verification_status: VerificationStatus = VerificationStatus.NONE
    is_active: bool = True
    pending_issuance_tx: Optional[str] = None
    created_at: float = field(default_factory=now)

    def chain_identity(self, chain_id: str) -> Optional[ChainIdentity]:
        for entry in self.chain_identities:
            if entry.chain_id == chain_id:
                return entry
        return None

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.APPROVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "did": self.did,
            "ownerAddress": self.owner_address,
            "ownerChain": self.owner_chain,
            "tokenId": self.token_id,
            "chainIdentities": [c.to_dict() for c in self.chain_identities],
            "verificationStatus": self.verification_status.value,
            "isActive": self.is_active,
            "pendingIssuanceTx": self.pending_issuance_tx,
            "createdAt": self.created_at,
        }


# ============ Requests ============

@dataclass
class VerificationRequest:
    did: str
    level: VerificationLevel
    provider: str
    status: VerificationStatus = VerificationStatus.PENDING
    id: str = field(default_factory=lambda: new_request_id("ver"))
    provider_ref: Optional[str] = None
    rejection_reason: Optional[str] = None
    client_completed: bool = False
    last_error: Optional[str] = None
    created_at: float = field(default_factory=now)
    updated_at: float = field(default_factory=now)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "did": self.did,
            "level": self.level.value,
            "provider": self.provider,
            "status": self.status.value,
            "providerRef": self.provider_ref,
            "rejectionReason": self.rejection_reason,
            "clientCompleted": self.client_completed,
            "lastError": self.last_error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class IdentityProofPayload:
    did: str
    token_id: str
    kind: str = "identity_proof"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "did": self.did, "tokenId": self.token_id}


@dataclass(frozen=True)
class TokenTransferPayload:
    """Token bridge payload. ``amount`` is in base units, never a float."""
    token_address: str
    amount: int
    decimals: int
    symbol: str = ""
    kind: str = "token_transfer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "tokenAddress": self.token_address,
            "symbol": self.symbol,
            "decimals": self.decimals,
            # string keeps the integer exact for non-Python consumers
            "amount": str(self.amount),
            "displayAmount": from_base_units(self.amount, self.decimals),
        }


BridgePayload = Union[IdentityProofPayload, TokenTransferPayload]


def payload_from_dict(data: Dict[str, Any]) -> BridgePayload:
    if data.get("kind") == "token_transfer":
        return TokenTransferPayload(
            token_address=data["tokenAddress"],
            amount=int(data["amount"]),
            decimals=int(data["decimals"]),
            symbol=data.get("symbol", ""),
        )
    return IdentityProofPayload(did=data["did"], token_id=str(data["tokenId"]))


@dataclass
class BridgeRequest:
    did: str
    source_chain: str
    target_chain: str
    source_address: str
    target_address: str
    payload: BridgePayload
    status: BridgeStatus = BridgeStatus.CREATED
    id: str = field(default_factory=lambda: new_request_id("xfer"))
    transaction_hash: Optional[str] = None
    # transferId or requestId assigned by the source-chain bridge contract
    source_request_id: Optional[str] = None
    completion_tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    relay_registered: bool = False
    created_at: float = field(default_factory=now)
    updated_at: float = field(default_factory=now)
    version: int = 0

    @property
    def route(self):
        return (self.did, self.source_chain, self.target_chain)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "did": self.did,
            "sourceChain": self.source_chain,
            "targetChain": self.target_chain,
            "sourceAddress": self.source_address,
            "targetAddress": self.target_address,
            "payload": self.payload.to_dict(),
            "status": self.status.value,
            "transactionHash": self.transaction_hash,
            "transactionUrl": tx_url(self.source_chain, self.transaction_hash),
            "sourceRequestId": self.source_request_id,
            "completionTxHash": self.completion_tx_hash,
            "completionTxUrl": tx_url(self.target_chain, self.completion_tx_hash),
            "errorMessage": self.error_message,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
