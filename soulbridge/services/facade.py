"""
SoulBridge Orchestration Facade
End-to-end flows over the registry and the two coordinators:
connect -> create identity -> link addresses -> verify -> issue token -> bridge.

Cross-coordinator preconditions (a token is only issued after an approved,
poll-confirmed verification) are enforced here.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from soulbridge.amounts import to_base_units
from soulbridge.config import config
from soulbridge.errors import (
    BackendError,
    IdentityNotFoundError,
    IdentityNotVerifiedError,
    InvalidAddressError,
    NoProviderError,
    TransactionTimeoutError,
)
from soulbridge.models import (
    BridgeRequest,
    Identity,
    IdentityProofPayload,
    TokenTransferPayload,
    VerificationLevel,
    VerificationRequest,
    VerificationStatus,
    now,
)
from soulbridge.services.chain_client import ChainClient, WalletEvent
from soulbridge.services.credentials import CredentialService
from soulbridge.services.link_proof import link_proof
from soulbridge.services.polling import Poller
from soulbridge.services.verification_provider import ProviderEvent, ProviderSession

logger = logging.getLogger(__name__)


# Session cache keys
SESSION_DID = "session:did"
SESSION_TOKEN = "session:token_id"
SESSION_ACCOUNT = "session:account:{chain}"


class OrchestrationFacade:
    """Single entry point used by the HTTP routes."""

    def __init__(self, store, backend, clients: Dict[str, ChainClient], registry,
                 verification, bridge, poller: Poller = None,
                 credentials: CredentialService = None):
        self.store = store
        self.backend = backend
        self.clients = clients
        self.registry = registry
        self.verification = verification
        self.bridge = bridge
        self.poller = poller or Poller()
        self.credentials = credentials or CredentialService(store, backend)
        self._unsubscribes = {}

    # ============ Wallets ============

    def _client(self, chain: str) -> ChainClient:
        client = self.clients.get(chain)
        if client is None:
            raise NoProviderError(f"No wallet provider for chain {chain}")
        return client

    async def connect_wallet(self, chain: str) -> str:
        client = self._client(chain)
        account = await client.connect()
        if chain not in self._unsubscribes:
            self._unsubscribes[chain] = client.subscribe(self._on_wallet_event)
        self.store.cache_set(SESSION_ACCOUNT.format(chain=chain), account)
        return account

    async def disconnect_all(self) -> None:
        for chain, unsubscribe in list(self._unsubscribes.items()):
            unsubscribe()
            self.store.cache_delete(SESSION_ACCOUNT.format(chain=chain))
        self._unsubscribes.clear()
        for client in self.clients.values():
            if client.connected:
                await client.disconnect()

    def _on_wallet_event(self, event: WalletEvent) -> None:
        if event.kind != ChainClient.ACCOUNTS_CHANGED:
            logger.info(f"Wallet on {event.chain} switched to chain {event.value}")
            return
        key = SESSION_ACCOUNT.format(chain=event.chain)
        if event.value:
            self.store.cache_set(key, event.value)
        else:
            self.store.cache_delete(key)
        logger.info(f"Wallet account on {event.chain} is now {event.value}")

    async def _account(self, chain: str) -> str:
        client = self._client(chain)
        account = await client.get_account()
        if not account:
            account = await self.connect_wallet(chain)
        return account

    # ============ Identity ============

    def get_identity(self, did: str) -> Identity:
        return self.registry.get_identity(did)

    async def create_identity(self, chain: str) -> Identity:
        """DID for the account connected on ``chain``."""
        account = await self._account(chain)
        identity = await self.registry.generate_did(account, chain)
        self.store.cache_set(SESSION_DID, identity.did)
        return identity

    async def link_address(self, did: str, chain: str, address: str = None,
                           signature: str = None) -> Identity:
        """
        Link an address on ``chain``. Without a signature the chain's wallet
        signs the challenge. Identities holding a token also record the link
        on-chain, which confirms it.
        """
        if signature is None:
            client = self._client(chain)
            address = address or await self._account(chain)
            signature = await client.sign_message(link_proof.build_challenge(chain, address))
        elif not address:
            raise InvalidAddressError("An address is required with a supplied signature")

        identity = await self.registry.link_chain_address(did, chain, address, signature)
        if identity.token_id is not None:
            identity = await self.registry.publish_chain_identity(did, chain)
        return identity

    async def confirm_address(self, did: str, chain: str, address: str) -> Identity:
        return await self.registry.confirm_chain_identity(did, chain, address)

    async def deactivate_identity(self, did: str) -> Identity:
        return await self.registry.deactivate(did)

    def resolve_did(self, did: str) -> Dict[str, Any]:
        return self.registry.resolve_did(did)

    # ============ Verification ============

    async def start_verification(self, did: str, level: VerificationLevel,
                                 applicant: Dict[str, Any]) -> Tuple[VerificationRequest, ProviderSession]:
        request, session = await self.verification.submit(did, level, applicant)
        self._poll_verification(request.id)
        return request, session

    def _poll_verification(self, request_id: str) -> None:
        async def tick() -> bool:
            request = await self.verification.poll_status(request_id)
            return request.status.is_terminal

        self.poller.start(f"verification:{request_id}", tick)

    async def handle_provider_event(self, event: ProviderEvent) -> int:
        """Queue a provider callback and process everything queued so far."""
        self.verification.deliver(event)
        return await self.verification.drain()

    def get_verification(self, request_id: str) -> VerificationRequest:
        return self.verification.get_request(request_id)

    async def refresh_verification(self, request_id: str) -> VerificationRequest:
        return await self.verification.poll_status(request_id)

    async def list_kyc_reviews(self, status: VerificationStatus = None) -> List[Dict[str, Any]]:
        return await self.verification.list_for_review(status)

    async def review_verification(self, request_id: str, approved: bool,
                                  notes: str = "") -> VerificationRequest:
        """Operator decision on a verification; polling continues until it is terminal."""
        request = await self.verification.review(request_id, approved, notes)
        if not request.status.is_terminal:
            self._poll_verification(request.id)
        return request

    # ============ Soulbound token ============

    async def issue_identity_token(self, did: str) -> Identity:
        """
        Issue the Soulbound token. The latest verification must be APPROVED,
        which only an authoritative poll can set.
        """
        latest = self.verification.latest_for(did)
        if latest is None or latest.status != VerificationStatus.APPROVED:
            status = latest.status.value if latest else VerificationStatus.NONE.value
            raise IdentityNotVerifiedError(f"{did} verification is {status}, not APPROVED")

        identity = self.registry.get_identity(did)
        credential = self.build_credential(identity, latest)
        identity = await self.registry.issue_soulbound_token(did, credential)

        self.store.cache_set(SESSION_DID, identity.did)
        self.store.cache_set(SESSION_TOKEN, identity.token_id)
        return identity

    async def resolve_issuance(self, did: str) -> Identity:
        return await self.registry.resolve_issuance(did)

    async def get_token_info(self, token_id: str) -> Dict[str, Any]:
        """Backend record for a Soulbound token, plus the local identity when it matches."""
        try:
            token = await self.backend.get_token(token_id)
        except BackendError as e:
            if e.status_code == 404:
                raise IdentityNotFoundError(f"No identity holds token {token_id}") from e
            raise
        if not token:
            raise IdentityNotFoundError(f"No identity holds token {token_id}")

        info = dict(token)
        identity = self.store.get_identity(token.get("did") or "")
        if identity is not None and identity.token_id == str(token_id):
            info["identity"] = identity.to_dict()
        return info

    def build_credential(self, identity: Identity, verification: VerificationRequest) -> str:
        """Verifiable credential JSON stored with the token."""
        return json.dumps({
            "@context": ["https://www.w3.org/2018/credentials/v1"],
            "type": ["VerifiableCredential", "IdentityVerificationCredential"],
            "issuer": config.CREDENTIAL_ISSUER_DID,
            "issuanceDate": int(now()),
            "credentialSubject": {
                "id": identity.did,
                "owner": identity.owner_address,
                "chain": identity.owner_chain,
                "verificationLevel": verification.level.value,
                "verificationProvider": verification.provider,
                "verificationId": verification.id,
            },
        }, sort_keys=True)

    # ============ Bridge ============

    async def bridge_identity(self, did: str, source_chain: str, target_chain: str,
                              target_address: str) -> BridgeRequest:
        identity = self.registry.get_identity(did)
        if identity.token_id is None:
            raise IdentityNotVerifiedError(f"{did} has no Soulbound token to prove")
        payload = IdentityProofPayload(did=did, token_id=identity.token_id)
        request = self.bridge.create_request(did, source_chain, target_chain, target_address, payload)
        return await self._submit_and_track(request)

    async def bridge_tokens(self, did: str, source_chain: str, target_chain: str,
                            target_address: str, token_address: str, amount: str,
                            decimals: int = None, symbol: str = "") -> BridgeRequest:
        """Bridge ``amount`` (a decimal string) of ``token_address``."""
        decimals = config.DEFAULT_TOKEN_DECIMALS if decimals is None else decimals
        payload = TokenTransferPayload(
            token_address=token_address,
            amount=to_base_units(amount, decimals),
            decimals=decimals,
            symbol=symbol,
        )
        request = self.bridge.create_request(did, source_chain, target_chain, target_address, payload)
        return await self._submit_and_track(request)

    async def _submit_and_track(self, request: BridgeRequest) -> BridgeRequest:
        try:
            request = await self.bridge.submit(request.id)
        except TransactionTimeoutError:
            # Polling settles the ambiguous submission from chain state
            self._poll_bridge(request.id)
            raise
        if not request.status.is_terminal:
            self._poll_bridge(request.id)
        return request

    def _poll_bridge(self, request_id: str) -> None:
        async def tick() -> bool:
            request = await self.bridge.poll_status(request_id)
            return request.status.is_terminal

        self.poller.start(f"bridge:{request_id}", tick)

    def get_bridge_request(self, request_id: str) -> BridgeRequest:
        return self.bridge.get_request(request_id)

    def list_bridge_requests(self, did: str) -> List[BridgeRequest]:
        return self.bridge.list_requests(did)

    async def refresh_bridge_request(self, request_id: str) -> BridgeRequest:
        return await self.bridge.poll_status(request_id)

    async def cancel_bridge_request(self, request_id: str) -> BridgeRequest:
        request = await self.bridge.cancel(request_id)
        self.poller.stop(f"bridge:{request_id}")
        return request

    # ============ Session ============

    async def resume(self) -> Optional[Identity]:
        """
        Restore the previous session.

        The cached DID and token are advisory: they are only trusted after
        the backend confirms the token belongs to the DID. Polling restarts
        for every non-terminal request either way.
        """
        for request in self.store.list_active_verification_requests():
            self._poll_verification(request.id)
        for request in self.store.list_active_bridge_requests():
            self._poll_bridge(request.id)

        did = self.store.cache_get(SESSION_DID)
        if not did:
            return None
        identity = self.store.get_identity(did)
        if identity is None:
            self._clear_session()
            return None

        token_id = self.store.cache_get(SESSION_TOKEN)
        if token_id is None:
            return identity

        try:
            token = await self.backend.get_token(token_id)
        except BackendError as e:
            logger.warning(f"[!] Could not revalidate cached session for {did}: {e.reason}")
            return None

        if not token or token.get("did") != did or identity.token_id != str(token_id):
            logger.warning(f"[!] Cached session for {did} does not match the backend; clearing")
            self._clear_session()
            return None

        logger.info(f"[+] Resumed session for {did}")
        return identity

    def _clear_session(self) -> None:
        self.store.cache_delete(SESSION_DID)
        self.store.cache_delete(SESSION_TOKEN)

    async def close(self) -> None:
        await self.poller.stop_all()
        await self.disconnect_all()
        for client in self.clients.values():
            await client.close()
        await self.backend.close()
