"""
SoulBridge Bridge Coordinator
Moves identity proofs and token transfers between chains:

    CREATED -> SUBMITTED -> RELAYING -> COMPLETED | FAILED

The source-chain transaction is sent once. Everything after it (relay
registration, relay progress, target-chain completion) is observed by
polling and never causes a resubmission.
"""

import logging
from typing import Callable, Dict, List, Optional

from web3 import Web3

from soulbridge.errors import (
    BackendError,
    BridgeEventMissingError,
    ConcurrentRequestError,
    DuplicateBridgeRequestError,
    IdentityNotFoundError,
    IdentityNotVerifiedError,
    InvalidAddressError,
    InvalidRouteError,
    InvalidTransitionError,
    NetworkUnavailableError,
    NoProviderError,
    NoSourceIdentityError,
    RequestNotFoundError,
    SoulBridgeError,
    StaleRequestError,
    TransactionRevertedError,
    TransactionTimeoutError,
)
from soulbridge.models import (
    BRIDGE_TRANSITIONS,
    BridgePayload,
    BridgeRequest,
    BridgeStatus,
    IdentityProofPayload,
    StatusChange,
    TokenTransferPayload,
    VerificationStatus,
)
from soulbridge.networks import EVM, NETWORKS, get_network
from soulbridge.services.chain_client import ChainClient, ContractRef, is_valid_address

logger = logging.getLogger(__name__)


# Relay statuses reported by GET /bridge/transfer/{id}
RELAY_FAILED = ("failed", "rejected", "expired")
RELAY_ACTIVE = ("relaying", "verifying", "completing", "completed")

# Event the source-chain bridge contract emits per payload kind, and its id field
REQUEST_EVENTS = {
    "identity_proof": ("VerificationRequested", "requestId"),
    "token_transfer": ("TokensLocked", "transferId"),
}


class BridgeCoordinator:
    """Owns BridgeRequest entities."""

    def __init__(
        self,
        store,
        backend,
        clients: Dict[str, ChainClient],
        bridge_contracts: Dict[str, ContractRef],
    ):
        """
        Args:
            store: Persistence layer
            backend: Backend API client (relay registration and status)
            clients: Chain clients keyed by network key
            bridge_contracts: CrossChainBridge deployment per source chain
        """
        self.store = store
        self.backend = backend
        self.clients = clients
        self.bridge_contracts = bridge_contracts
        self._listeners: List[Callable[[StatusChange], None]] = []
        self._submitting = set()

    # ============ Listeners ============

    def add_listener(self, listener: Callable[[StatusChange], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _emit(self, change: StatusChange) -> None:
        for listener in list(self._listeners):
            listener(change)

    # ============ Requests ============

    def get_request(self, request_id: str) -> BridgeRequest:
        request = self.store.get_bridge_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"Bridge request not found: {request_id}")
        return request

    def list_requests(self, did: str) -> List[BridgeRequest]:
        return self.store.list_bridge_requests(did)

    def create_request(
        self,
        did: str,
        source_chain: str,
        target_chain: str,
        target_address: str,
        payload: BridgePayload,
    ) -> BridgeRequest:
        """
        Validate and persist a new request. Makes no network calls.

        Checks run in this order: verified identity, distinct chains,
        verified source chain identity, target address format, a source
        chain client and bridge contract, one active request per
        (did, source, target).
        """
        identity = self.store.get_identity(did)
        if identity is None:
            raise IdentityNotFoundError(f"Identity not found: {did}")
        if not identity.is_active or identity.verification_status != VerificationStatus.APPROVED:
            raise IdentityNotVerifiedError(f"{did} is not verified")
        if isinstance(payload, IdentityProofPayload) and identity.token_id is None:
            raise IdentityNotVerifiedError(f"{did} has no Soulbound token to prove")

        if source_chain == target_chain:
            raise InvalidRouteError(f"Source and target chain are both {source_chain}")
        for chain in (source_chain, target_chain):
            if chain not in NETWORKS:
                raise InvalidRouteError(f"Unsupported chain: {chain}")

        source = identity.chain_identity(source_chain)
        if source is None or not source.is_verified:
            raise NoSourceIdentityError(f"{did} has no verified {source_chain} identity")

        if not is_valid_address(target_chain, target_address):
            raise InvalidAddressError(f"Invalid {target_chain} address: {target_address}")

        self._client(source_chain)
        self._contract(source_chain)

        existing = self.store.get_active_bridge_for_route(did, source_chain, target_chain)
        if existing is not None:
            raise DuplicateBridgeRequestError(
                f"{source_chain} -> {target_chain} already has an active request for {did}",
                existing.id,
            )

        request = BridgeRequest(
            did=did,
            source_chain=source_chain,
            target_chain=target_chain,
            source_address=source.address,
            target_address=target_address,
            payload=payload,
        )
        if not self.store.insert_bridge_request(request):
            existing = self.store.get_active_bridge_for_route(did, source_chain, target_chain)
            raise DuplicateBridgeRequestError(
                f"{source_chain} -> {target_chain} already has an active request for {did}",
                existing.id if existing else "",
            )

        logger.info(f"[+] Bridge request {request.id} created: {source_chain} -> {target_chain}")
        return request

    # ============ Submission ============

    async def submit(self, request_id: str) -> BridgeRequest:
        """
        Send the source-chain transaction.

        The hash is stored as soon as the wallet returns it. Any failure
        before that (rejection in the wallet, a network switch that failed)
        leaves nothing on-chain, so the request is marked FAILED and its route
        is free again.

        Raises:
            TransactionRevertedError: request is now FAILED with the reason
            TransactionTimeoutError: hash kept, status unchanged; poll to resolve
            BridgeEventMissingError: confirmed without the bridge event; cancel to release
            InvalidTransitionError: already submitted, or a hash is unresolved
        """
        request = self.get_request(request_id)
        if request.status != BridgeStatus.CREATED:
            raise InvalidTransitionError(
                f"Bridge request {request.id} is {request.status.value}, not CREATED"
            )
        if request.transaction_hash:
            request = await self._resolve_submission(request)
            if request.status != BridgeStatus.CREATED:
                return request
            raise InvalidTransitionError(
                f"Transaction {request.transaction_hash} for {request.id} is unresolved; "
                "poll its status instead of resubmitting"
            )
        if request.id in self._submitting:
            raise ConcurrentRequestError(f"Bridge request {request.id} is already being submitted")

        def record_hash(tx_hash: str) -> None:
            request.transaction_hash = tx_hash
            self.store.update_bridge_request(request)

        self._submitting.add(request.id)
        try:
            try:
                client = self._client(request.source_chain)
                contract = self._contract(request.source_chain)
                network = get_network(request.source_chain)
                await client.ensure_network(network.chain_id if network.chain_id is not None else network.key)

                method, args = self._contract_call(request)
                result = await client.submit_contract_call(contract, method, args, on_sent=record_hash)
            except TransactionRevertedError as e:
                request.error_message = e.reason
                if e.tx_hash:
                    request.transaction_hash = e.tx_hash
                self._transition(request, BridgeStatus.FAILED)
                raise
            except TransactionTimeoutError as e:
                logger.warning(f"[!] Bridge {request.id} submission unresolved: {e.reason}")
                raise
            except SoulBridgeError as e:
                if request.transaction_hash:
                    raise
                request.error_message = e.reason
                self._transition(request, BridgeStatus.FAILED)
                logger.warning(f"[!] Bridge {request.id} failed before sending: {e.reason}")
                raise

            self._settle_submission(request, client, result.receipt)
        finally:
            self._submitting.discard(request.id)

        await self._register_relay(request)
        return request

    def _contract_call(self, request: BridgeRequest):
        payload = request.payload
        if isinstance(payload, TokenTransferPayload):
            token = payload.token_address
            if get_network(request.source_chain).family == EVM:
                token = Web3.to_checksum_address(token)
            return "bridgeTokens", [token, payload.amount, request.target_chain, request.target_address]
        return "requestVerification", [payload.did, request.target_chain]

    def _source_event(self, client: ChainClient, request: BridgeRequest, receipt) -> Optional[str]:
        """Id the bridge contract assigned in ``receipt``, or None if it emitted no event."""
        event_name, id_field = REQUEST_EVENTS[request.payload.kind]
        event = client.decode_event(receipt, event_name)
        if not event or event.get(id_field) is None:
            return None
        return str(event[id_field])

    def _settle_submission(self, request: BridgeRequest, client: ChainClient, receipt) -> None:
        """Move a confirmed source transaction to SUBMITTED, keyed by its contract id."""
        source_id = self._source_event(client, request, receipt)
        if source_id is None:
            event_name = REQUEST_EVENTS[request.payload.kind][0]
            logger.warning(
                f"[!] Bridge {request.id}: {request.transaction_hash} has no {event_name} event"
            )
            raise BridgeEventMissingError(request.transaction_hash, event_name)

        request.source_request_id = source_id
        self._transition(request, BridgeStatus.SUBMITTED)

    async def _register_relay(self, request: BridgeRequest) -> None:
        """Hand the submitted transfer to the relay. Failures retry on the next poll."""
        try:
            await self.backend.send_bridge_message({
                "transferId": request.id,
                "onChainRequestId": request.source_request_id,
                "did": request.did,
                "sourceChain": request.source_chain,
                "targetChain": request.target_chain,
                "sourceAddress": request.source_address,
                "targetAddress": request.target_address,
                "transactionHash": request.transaction_hash,
                "payload": request.payload.to_dict(),
            })
        except BackendError as e:
            logger.warning(f"[!] Relay registration for {request.id} failed, will retry: {e.reason}")
            return

        request.relay_registered = True
        self.store.update_bridge_request(request)

    async def _resolve_submission(self, request: BridgeRequest) -> BridgeRequest:
        """Settle a CREATED request whose transaction outcome is unknown."""
        client = self._client(request.source_chain)
        receipt = await client.get_receipt(request.transaction_hash)
        if receipt is None:
            return request

        if client.receipt_succeeded(receipt):
            self._settle_submission(request, client, receipt)
            await self._register_relay(request)
        else:
            request.error_message = await client.failed_receipt_reason(request.transaction_hash, receipt)
            self._transition(request, BridgeStatus.FAILED)
        return request

    async def cancel(self, request_id: str) -> BridgeRequest:
        """
        Fail a CREATED request that cannot make progress, freeing its route.

        Allowed when nothing was sent, or when the sent transaction reverted
        or confirmed without a bridge event. A transaction with no receipt yet
        may still mine, and one that emitted its event has locked the
        transfer; neither can be cancelled.
        """
        request = self.get_request(request_id)
        if request.status != BridgeStatus.CREATED:
            raise InvalidTransitionError(
                f"Bridge request {request.id} is {request.status.value}, not CREATED"
            )
        if request.id in self._submitting:
            raise ConcurrentRequestError(f"Bridge request {request.id} is being submitted")

        tx_hash = request.transaction_hash
        if not tx_hash:
            request.error_message = "Cancelled before submission"
        else:
            client = self._client(request.source_chain)
            receipt = await client.get_receipt(tx_hash)
            if receipt is None:
                raise InvalidTransitionError(
                    f"Transaction {tx_hash} for {request.id} is unresolved and may still mine"
                )
            if not client.receipt_succeeded(receipt):
                request.error_message = await client.failed_receipt_reason(tx_hash, receipt)
            elif self._source_event(client, request, receipt) is not None:
                raise InvalidTransitionError(
                    f"Transaction {tx_hash} locked the transfer; poll {request.id} instead"
                )
            else:
                request.error_message = f"Cancelled: {tx_hash} emitted no bridge event"

        self._transition(request, BridgeStatus.FAILED)
        logger.info(f"[+] Bridge request {request.id} cancelled")
        return request

    # ============ Polling ============

    async def poll_status(self, request_id: str) -> BridgeRequest:
        """
        Advance the request from relay and chain state.

        Idempotent: with no new data nothing is written and nothing emitted.
        Stale writes are discarded and the stored state returned.
        """
        request = self.get_request(request_id)
        if request.status.is_terminal:
            return request

        try:
            return await self._poll(request)
        except StaleRequestError:
            logger.info(f"Discarded stale poll result for {request.id}")
            return self.get_request(request_id)

    async def _poll(self, request: BridgeRequest) -> BridgeRequest:
        if request.status == BridgeStatus.CREATED:
            if request.transaction_hash:
                return await self._resolve_submission(request)
            return request

        if not request.relay_registered:
            await self._register_relay(request)
            if not request.relay_registered:
                return request

        transfer = await self.backend.get_transfer(request.id) or {}
        relay_status = str(transfer.get("status", "")).lower()

        if relay_status in RELAY_FAILED:
            request.error_message = transfer.get("error") or f"Relay reported {relay_status}"
            self._transition(request, BridgeStatus.FAILED)
            return request

        if request.status == BridgeStatus.SUBMITTED:
            if transfer.get("sourceEventObserved") or relay_status in RELAY_ACTIVE:
                self._transition(request, BridgeStatus.RELAYING)
            else:
                return request

        completion_tx = transfer.get("completionTxHash")
        if request.status == BridgeStatus.RELAYING and completion_tx:
            await self._check_completion(request, completion_tx, relay_status)

        return request

    async def _check_completion(self, request: BridgeRequest, completion_tx: str, relay_status: str) -> None:
        client = self.clients.get(request.target_chain)
        if client is None:
            # No target-chain client; the relay's own confirmation is all there is
            if relay_status == "completed":
                request.completion_tx_hash = completion_tx
                self._transition(request, BridgeStatus.COMPLETED)
            return

        receipt = await client.get_receipt(completion_tx)
        if receipt is None:
            return

        request.completion_tx_hash = completion_tx
        if client.receipt_succeeded(receipt):
            self._transition(request, BridgeStatus.COMPLETED)
        else:
            request.error_message = "Target chain completion transaction failed"
            self._transition(request, BridgeStatus.FAILED)

    def is_terminal(self, request_id: str) -> bool:
        return self.get_request(request_id).status.is_terminal

    # ============ Helpers ============

    def _client(self, chain: str) -> ChainClient:
        client = self.clients.get(chain)
        if client is None:
            raise NoProviderError(f"No wallet provider for chain {chain}")
        return client

    def _contract(self, chain: str) -> ContractRef:
        contract = self.bridge_contracts.get(chain)
        if contract is None:
            raise NetworkUnavailableError(f"No bridge contract deployed on {chain}")
        return contract

    def _transition(self, request: BridgeRequest, new_status: BridgeStatus) -> None:
        old_status = request.status
        if new_status not in BRIDGE_TRANSITIONS[old_status]:
            raise InvalidTransitionError(
                f"Bridge {request.id} cannot go from {old_status.value} to {new_status.value}"
            )

        request.status = new_status
        try:
            self.store.update_bridge_request(request)
        except StaleRequestError:
            request.status = old_status
            raise

        logger.info(f"[+] Bridge {request.id}: {old_status.value} -> {new_status.value}")
        self._emit(StatusChange(request.id, request.did, old_status.value, new_status.value))
