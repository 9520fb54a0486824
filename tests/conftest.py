import asyncio
import itertools

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from soulbridge.abis import CROSS_CHAIN_BRIDGE, SOULBOUND_NFT
from soulbridge.database import Store
from soulbridge.errors import BackendError, TransactionRevertedError, UserRejectedError
from soulbridge.models import ChainIdentity, VerificationStatus
from soulbridge.networks import NETWORKS
from soulbridge.services.bridge import BridgeCoordinator
from soulbridge.services.chain_client import ChainClient, ContractRef
from soulbridge.services.facade import OrchestrationFacade
from soulbridge.services.identity_registry import IdentityRegistry
from soulbridge.services.polling import Poller
from soulbridge.services.verification import VerificationCoordinator
from soulbridge.services.verification_provider import OnfidoAdapter
from soulbridge.services.wallets import EventEmitter


OWNER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
NFT_ADDRESS = "0x" + "aa" * 20
BRIDGE_ADDRESS = "0x" + "bb" * 20
TOKEN_ADDRESS = "0x" + "cc" * 20

# Wrapped SOL mint: a real 32-byte base58 address
SOLANA_ADDRESS = "So11111111111111111111111111111111111111112"

# Events the bridge contract emits for each call, and the id each one carries
BRIDGE_EVENTS = {
    "bridgeTokens": ("TokensLocked", "transferId"),
    "requestVerification": ("VerificationRequested", "requestId"),
}


class FakeChainClient(ChainClient):
    """
    In-memory chain. Keeps the base class behaviour (wallet guard, revert and
    timeout handling) and scripts the chain side.
    """

    def __init__(self, network_key, account=None, receipt_timeout=0.05):
        super().__init__(NETWORKS[network_key], wallet=EventEmitter(), receipt_timeout=receipt_timeout)
        self.family = self.network.family
        self.local_account = account
        self.calls = []
        self.switches = []
        self.receipts = {}

        # Scripted behaviour for the next submissions
        self.revert_reason = None  # preflight revert, nothing is sent
        self.onchain_revert = None  # sent, then mined with status 0
        self.reject = False  # declined in the wallet
        self.hang = False
        self.events = {}
        self.emit_bridge_events = True
        self._hashes = itertools.count(1)
        self._contract_ids = itertools.count(100)

    async def ensure_network(self, target_chain_id):
        self.switches.append(target_chain_id)

    async def _request_accounts(self):
        return self.local_account.address if self.local_account else None

    async def _current_account(self):
        return await self._request_accounts()

    async def _sign(self, message, account):
        signed = self.local_account.sign_message(encode_defunct(text=message))
        return Web3.to_hex(signed.signature)

    async def _send(self, contract_ref, method, args, account):
        self.calls.append((contract_ref.name, method, list(args)))
        if self.reject:
            raise UserRejectedError(f"{method} was rejected in the wallet")
        if self.revert_reason:
            raise TransactionRevertedError(self.revert_reason)
        tx_hash = "0x%064x" % next(self._hashes)
        events = dict(self.events)
        if self.emit_bridge_events and method in BRIDGE_EVENTS:
            event_name, id_field = BRIDGE_EVENTS[method]
            events.setdefault(event_name, {id_field: next(self._contract_ids)})
        self.receipts[tx_hash] = {"status": 1, "transactionHash": tx_hash, "events": events}
        if self.onchain_revert:
            self.receipts[tx_hash] = {"status": 0, "transactionHash": tx_hash, "revertReason": self.onchain_revert}
        return tx_hash

    async def _wait_for_receipt(self, tx_hash):
        if self.hang:
            await asyncio.sleep(3600)
        return self.receipts[tx_hash]

    def _receipt_succeeded(self, receipt):
        return receipt["status"] == 1

    async def _failed_receipt_reason(self, tx_hash, receipt):
        return receipt.get("revertReason") or "Transaction reverted"

    def decode_event(self, receipt, event_name):
        return receipt.get("events", {}).get(event_name)

    async def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)


class FakeBackend:
    """Records every call; statuses and transfers are set by the test."""

    def __init__(self):
        self.calls = []
        self.verification_status = {}
        self.transfers = {}
        self.tokens = {}
        self.credentials = {}
        self.fail = set()
        self._refs = itertools.count(1)

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise BackendError(f"{name} failed", 400)

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    async def register_identity(self, did, owner_address, chain):
        self._record("register_identity", did, owner_address, chain)

    async def add_chain_identity(self, did, chain_id, address):
        self._record("add_chain_identity", did, chain_id, address)

    async def update_identity(self, did, updates):
        self._record("update_identity", did, updates)

    async def get_token(self, token_id):
        self._record("get_token", token_id)
        return self.tokens.get(str(token_id))

    async def request_verification(self, did, level, applicant):
        self._record("request_verification", did, level, applicant)
        ref = f"ver-{next(self._refs)}"
        self.verification_status[ref] = {"status": "pending"}
        return {"sdkToken": f"sdk-{ref}", "workflowRunId": f"run-{ref}", "verificationId": ref}

    async def get_verification_status(self, verification_id):
        self._record("get_verification_status", verification_id)
        return self.verification_status[verification_id]

    async def complete_verification(self, verification_id):
        self._record("complete_verification", verification_id)

    async def send_bridge_message(self, message):
        self._record("send_bridge_message", message)

    async def get_transfer(self, transfer_id):
        self._record("get_transfer", transfer_id)
        return self.transfers.get(transfer_id, {"status": "pending"})

    async def issue_credential(self, credential):
        self._record("issue_credential", credential)
        credential_hash = f"0xcred{len(self.credentials) + 1}"
        stored = {
            "credential_hash": credential_hash,
            "subject_did": credential["subjectDid"],
            "credential_type": credential["credentialType"],
            "status": "ACTIVE",
        }
        self.credentials[credential_hash] = stored
        return stored

    async def verify_credential(self, credential_hash):
        self._record("verify_credential", credential_hash)
        credential = self.credentials.get(credential_hash)
        return {"valid": bool(credential) and credential["status"] == "ACTIVE"}

    async def revoke_credential(self, credential_hash, reason):
        self._record("revoke_credential", credential_hash, reason)
        self.credentials[credential_hash]["status"] = "REVOKED"

    async def get_credential(self, credential_hash):
        self._record("get_credential", credential_hash)
        if credential_hash not in self.credentials:
            raise BackendError("Credential not found", 404)
        return dict(self.credentials[credential_hash])

    async def get_credentials_for_subject(self, did):
        self._record("get_credentials_for_subject", did)
        return {"credentials": [c for c in self.credentials.values() if c["subject_did"] == did]}

    async def get_credentials_by_sbt(self, token_id):
        self._record("get_credentials_by_sbt", token_id)
        return list(self.credentials.values())

    async def verify_cross_chain(self, credential_hash, target_chain):
        self._record("verify_cross_chain", credential_hash, target_chain)
        return {"valid": True, "targetChain": target_chain}

    async def list_kyc_verifications(self, status=None):
        self._record("list_kyc_verifications", status)
        return {"verifications": [
            {"id": ref, "status": data["status"]} for ref, data in self.verification_status.items()
        ]}

    async def approve_kyc(self, verification_id, notes=""):
        self._record("approve_kyc", verification_id, notes)
        self.verification_status[verification_id] = {"status": "approved"}

    async def reject_kyc(self, verification_id, notes=""):
        self._record("reject_kyc", verification_id, notes)
        self.verification_status[verification_id] = {"status": "rejected", "reason": notes}

    async def close(self):
        pass


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def owner():
    return Account.from_key(OWNER_KEY)


@pytest.fixture
def other():
    return Account.from_key(OTHER_KEY)


@pytest.fixture
def store():
    s = Store(":memory:")
    yield s
    s.close()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def clients(owner):
    return {
        "polygon_amoy": FakeChainClient("polygon_amoy", owner),
        "polygon": FakeChainClient("polygon", owner),
        "ethereum": FakeChainClient("ethereum", owner),
        "solana_devnet": FakeChainClient("solana_devnet"),
    }


@pytest.fixture
def nft():
    return ContractRef(SOULBOUND_NFT, NFT_ADDRESS)


@pytest.fixture
def registry(store, backend, clients, nft):
    return IdentityRegistry(store, backend, clients, nft, primary_chain="polygon_amoy")


@pytest.fixture
def verification(store, backend):
    return VerificationCoordinator(store, OnfidoAdapter(backend, workflow_id="wf-test"))


@pytest.fixture
def bridge(store, backend, clients):
    contracts = {
        "polygon": ContractRef(CROSS_CHAIN_BRIDGE, BRIDGE_ADDRESS),
        "polygon_amoy": ContractRef(CROSS_CHAIN_BRIDGE, BRIDGE_ADDRESS),
    }
    return BridgeCoordinator(store, backend, clients, contracts)


@pytest.fixture
def identity(registry, owner):
    return run(registry.generate_did(owner.address, "polygon_amoy"))


@pytest.fixture
def verified_identity(store, identity, owner):
    """Identity holding token 1, with verified owner and polygon identities."""
    identity.token_id = "1"
    identity.verification_status = VerificationStatus.APPROVED
    store.update_identity(identity)
    address = owner.address.lower()
    store.upsert_chain_identity(identity.did, ChainIdentity("polygon_amoy", address, True))
    store.upsert_chain_identity(identity.did, ChainIdentity("polygon", address, True))
    return store.get_identity(identity.did)


@pytest.fixture
def facade(store, backend, clients, registry, verification, bridge):
    return OrchestrationFacade(store, backend, clients, registry, verification, bridge, Poller(interval=0.01))
