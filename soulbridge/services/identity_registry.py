"""
SoulBridge Identity Registry
DIDs, linked chain addresses and Soulbound token issuance.

Implements:
- Deterministic DID generation for a connected owner address
- Signature-proven linking of further chain addresses
- Soulbound token issuance on the primary chain (never retried automatically)
- Resolution of issuances whose on-chain outcome was ambiguous
- DID documents for linked and verified chain accounts
"""

import logging
from typing import Any, Dict

from web3 import Web3

from soulbridge.config import config
from soulbridge.errors import (
    BackendError,
    ChainIdentityNotFoundError,
    ConcurrentRequestError,
    IdentityNotFoundError,
    IdentityNotVerifiedError,
    InvalidAddressError,
    IssuanceEventMissingError,
    IssuancePendingError,
    NoLinkedAddressError,
    NoProviderError,
    SignatureMismatchError,
    TokenAlreadyIssuedError,
    TransactionRevertedError,
    TransactionTimeoutError,
)
from soulbridge.models import ChainIdentity, Identity, VerificationStatus
from soulbridge.networks import EVM, NETWORKS, get_network
from soulbridge.services.chain_client import (
    ChainClient,
    ContractRef,
    is_valid_address,
    normalize_address,
)
from soulbridge.services.link_proof import link_proof as default_link_proof

logger = logging.getLogger(__name__)


DID_METHODS = {
    "evm": "ethr",
    "solana": "sol",
}


def build_did(chain: str, address: str) -> str:
    """did:<method>:<chain>:<address>, e.g. did:ethr:polygon_amoy:0xab..."""
    network = get_network(chain)
    return f"did:{DID_METHODS[network.family]}:{chain}:{normalize_address(chain, address)}"


class IdentityRegistry:
    """Owns Identity aggregates."""

    def __init__(
        self,
        store,
        backend,
        clients: Dict[str, ChainClient],
        soulbound_nft: ContractRef,
        primary_chain: str = None,
        proof=None,
    ):
        self.store = store
        self.backend = backend
        self.clients = clients
        self.soulbound_nft = soulbound_nft
        self.primary_chain = primary_chain or config.PRIMARY_CHAIN
        self.proof = proof or default_link_proof

        # DIDs with an issuance call in flight
        self._issuing = set()

    # ============ Lookup ============

    def get_identity(self, did: str) -> Identity:
        identity = self.store.get_identity(did)
        if identity is None:
            raise IdentityNotFoundError(f"Identity not found: {did}")
        return identity

    def _client(self, chain: str) -> ChainClient:
        client = self.clients.get(chain)
        if client is None:
            raise NoProviderError(f"No wallet provider for chain {chain}")
        return client

    # ============ DID ============

    async def generate_did(self, owner_address: str, chain: str) -> Identity:
        """
        Create (or return) the identity owned by ``owner_address`` on ``chain``.

        The owner must be the account currently authorized in the chain's
        wallet. The same address always yields the same DID.
        """
        if not is_valid_address(chain, owner_address):
            raise InvalidAddressError(f"Invalid {chain} address: {owner_address}")

        account = await self._client(chain).get_account()
        owner = normalize_address(chain, owner_address)
        if not account or normalize_address(chain, account) != owner:
            raise NoLinkedAddressError(
                f"{owner_address} is not the account connected on {chain}"
            )

        did = build_did(chain, owner)
        existing = self.store.get_identity(did)
        if existing is not None:
            return existing

        identity = Identity(
            did=did,
            owner_address=owner,
            owner_chain=chain,
            chain_identities=[ChainIdentity(chain_id=chain, address=owner)],
        )
        if not self.store.create_identity(identity):
            # Created concurrently; the stored row wins
            return self.get_identity(did)

        logger.info(f"[+] Created identity {did}")
        return identity

    # ============ Chain identities ============

    async def link_chain_address(self, did: str, chain_id: str, address: str, signature: str) -> Identity:
        """
        Link ``address`` on ``chain_id`` after checking the signature over the
        link challenge. Re-linking a chain replaces its entry; the new entry
        is unverified until confirmed.
        """
        identity = self.get_identity(did)

        if chain_id not in NETWORKS:
            raise InvalidAddressError(f"Unsupported chain: {chain_id}")
        if not is_valid_address(chain_id, address):
            raise InvalidAddressError(f"Invalid {chain_id} address: {address}")

        message = self.proof.build_challenge(chain_id, address)
        if not self.proof.verify(chain_id, address, message, signature):
            raise SignatureMismatchError(
                f"Signature does not prove control of {address} on {chain_id}"
            )

        entry = ChainIdentity(chain_id=chain_id, address=normalize_address(chain_id, address))
        self.store.upsert_chain_identity(did, entry)
        logger.info(f"[+] Linked {chain_id} address {address} to {did}")

        return self.get_identity(identity.did)

    async def confirm_chain_identity(self, did: str, chain_id: str, address: str) -> Identity:
        """
        Mark the ``chain_id`` entry verified, provided it still carries
        ``address``. A concurrent re-link to another address makes this fail.
        """
        identity = self.get_identity(did)
        entry = identity.chain_identity(chain_id)
        if entry is None or entry.address != normalize_address(chain_id, address):
            raise ChainIdentityNotFoundError(
                f"{did} has no {chain_id} identity for address {address}"
            )
        if entry.is_verified:
            return identity

        await self.backend.add_chain_identity(did, chain_id, entry.address)

        entry.is_verified = True
        self.store.upsert_chain_identity(did, entry)
        logger.info(f"[+] Confirmed {chain_id} identity for {did}")
        return self.get_identity(did)

    async def publish_chain_identity(self, did: str, chain_id: str) -> Identity:
        """Record the linked address on the Soulbound token, then confirm it."""
        identity = self.get_identity(did)
        if identity.token_id is None:
            raise IdentityNotVerifiedError(f"{did} has no Soulbound token yet")
        entry = identity.chain_identity(chain_id)
        if entry is None:
            raise ChainIdentityNotFoundError(f"{did} has no {chain_id} identity")

        client = await self._primary_client()
        result = await client.submit_contract_call(
            self.soulbound_nft,
            "addChainIdentity",
            [int(identity.token_id), chain_id, entry.address],
        )

        event = client.decode_event(result.receipt, "ChainIdentityAdded")
        if (
            event is None
            or event.get("chainId") != chain_id
            or normalize_address(chain_id, event.get("chainAddress", "")) != entry.address
        ):
            raise ChainIdentityNotFoundError(
                f"Transaction {result.tx_hash} did not record {chain_id} address {entry.address}"
            )

        return await self.confirm_chain_identity(did, chain_id, entry.address)

    # ============ Soulbound token ============

    async def issue_soulbound_token(self, did: str, verifiable_credential: str) -> Identity:
        """
        Mint the Soulbound token for ``did`` on the primary chain.

        Raises:
            TokenAlreadyIssuedError: a token exists; no contract call is made
            IssuancePendingError: an earlier issuance is still unresolved
            IssuanceEventMissingError: confirmed without IdentityVerified
            TransactionTimeoutError: no receipt; the hash is kept for resolve_issuance

        The transaction hash is stored the moment the wallet returns it, so an
        interrupted call still leaves a pending issuance to resolve.
        """
        identity = self.get_identity(did)
        if identity.token_id is not None:
            raise TokenAlreadyIssuedError(f"{did} already holds token {identity.token_id}")
        if identity.pending_issuance_tx:
            raise IssuancePendingError(identity.pending_issuance_tx)
        if did in self._issuing:
            raise ConcurrentRequestError(f"Issuance for {did} is already in progress")

        self._issuing.add(did)
        try:
            await self.backend.register_identity(did, identity.owner_address, identity.owner_chain)

            client = await self._primary_client()
            entity = identity.owner_address
            if get_network(identity.owner_chain).family != EVM:
                entity = await client.get_account()

            def record_pending(tx_hash: str) -> None:
                identity.pending_issuance_tx = tx_hash
                self.store.update_identity(identity)

            try:
                result = await client.submit_contract_call(
                    self.soulbound_nft,
                    "verifyIdentity",
                    [Web3.to_checksum_address(entity), did, verifiable_credential],
                    on_sent=record_pending,
                )
            except TransactionRevertedError:
                if identity.pending_issuance_tx:
                    identity.pending_issuance_tx = None
                    self.store.update_identity(identity)
                raise
            except TransactionTimeoutError as e:
                logger.warning(f"[!] Issuance for {did} unresolved: {e.reason}")
                raise

            event = client.decode_event(result.receipt, "IdentityVerified")
            if event is None:
                raise IssuanceEventMissingError(result.tx_hash)

            return await self._complete_issuance(identity, str(event["tokenId"]), result.tx_hash)
        finally:
            self._issuing.discard(did)

    async def resolve_issuance(self, did: str) -> Identity:
        """
        Settle an ambiguous issuance from its receipt.

        A reverted transaction clears the pending hash so issuance can be
        attempted again. A missing receipt keeps it pending.
        """
        identity = self.get_identity(did)
        tx_hash = identity.pending_issuance_tx
        if not tx_hash:
            return identity

        client = await self._primary_client()
        receipt = await client.get_receipt(tx_hash)
        if receipt is None:
            raise IssuancePendingError(tx_hash)

        if not client.receipt_succeeded(receipt):
            logger.warning(f"[!] Issuance {tx_hash} for {did} reverted; clearing")
            identity.pending_issuance_tx = None
            self.store.update_identity(identity)
            return identity

        event = client.decode_event(receipt, "IdentityVerified")
        if event is None:
            raise IssuanceEventMissingError(tx_hash)
        return await self._complete_issuance(identity, str(event["tokenId"]), tx_hash)

    async def _complete_issuance(self, identity: Identity, token_id: str, tx_hash: str) -> Identity:
        identity.token_id = token_id
        identity.verification_status = VerificationStatus.APPROVED
        identity.pending_issuance_tx = None
        self.store.update_identity(identity)

        owner_entry = identity.chain_identity(identity.owner_chain)
        if owner_entry is not None and owner_entry.address == identity.owner_address:
            owner_entry.is_verified = True
            self.store.upsert_chain_identity(identity.did, owner_entry)

        logger.info(f"[+] Issued Soulbound token {token_id} to {identity.did} ({tx_hash})")

        try:
            await self.backend.update_identity(identity.did, {
                "tokenId": token_id,
                "verificationStatus": VerificationStatus.APPROVED.value,
                "transactionHash": tx_hash,
            })
        except BackendError as e:
            # The token is on-chain and stored locally; the backend catches up on resume
            logger.warning(f"[!] Backend update after issuance failed for {identity.did}: {e}")

        return self.get_identity(identity.did)

    # ============ Resolution ============

    def resolve_did(self, did: str) -> Dict[str, Any]:
        """
        W3C DID resolution result for ``did``, built from local state.

        The owner address and every verified chain identity become
        verification methods. EVM accounts are given as CAIP-10 account ids,
        Solana accounts as their base58 Ed25519 public key.
        """
        identity = self.get_identity(did)

        methods = []
        for entry in identity.chain_identities:
            is_owner = entry.chain_id == identity.owner_chain and entry.address == identity.owner_address
            if not (entry.is_verified or is_owner):
                continue
            network = NETWORKS.get(entry.chain_id)
            if network is None:
                continue
            method = {"id": f"{did}#{entry.chain_id}", "controller": did}
            if network.family == EVM:
                method["type"] = "EcdsaSecp256k1RecoveryMethod2020"
                method["blockchainAccountId"] = (
                    f"eip155:{network.chain_id}:{Web3.to_checksum_address(entry.address)}"
                )
            else:
                method["type"] = "Ed25519VerificationKey2018"
                method["publicKeyBase58"] = entry.address
            methods.append(method)

        references = [method["id"] for method in methods]
        document = {
            "@context": ["https://www.w3.org/ns/did/v1"],
            "id": did,
            "controller": did,
            "verificationMethod": methods,
            "authentication": references,
            "assertionMethod": references,
        }
        if identity.token_id is not None:
            primary = get_network(self.primary_chain)
            document["service"] = [{
                "id": f"{did}#soulbound-token",
                "type": "SoulboundToken",
                "serviceEndpoint": (
                    f"eip155:{primary.chain_id}/erc721:{self.soulbound_nft.address}/{identity.token_id}"
                ),
            }]

        return {
            "didDocument": document,
            "didDocumentMetadata": {
                "created": identity.created_at,
                "deactivated": not identity.is_active,
                "verificationStatus": identity.verification_status.value,
            },
        }

    # ============ Lifecycle ============

    async def deactivate(self, did: str) -> Identity:
        """Mark the identity inactive. Identities are never deleted."""
        identity = self.get_identity(did)
        if not identity.is_active:
            return identity
        identity.is_active = False
        self.store.update_identity(identity)
        await self.backend.update_identity(did, {"isActive": False})
        logger.info(f"[+] Deactivated identity {did}")
        return identity

    async def _primary_client(self) -> ChainClient:
        client = self._client(self.primary_chain)
        network = get_network(self.primary_chain)
        await client.ensure_network(network.chain_id if network.chain_id is not None else network.key)
        return client

