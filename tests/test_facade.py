import asyncio
import json

import pytest

from conftest import SOLANA_ADDRESS, TOKEN_ADDRESS, run
from soulbridge.errors import (
    BackendError,
    BridgeEventMissingError,
    IdentityNotFoundError,
    IdentityNotVerifiedError,
    NoProviderError,
    TransactionTimeoutError,
)
from soulbridge.models import BridgeStatus, IdentityProofPayload, VerificationLevel, VerificationStatus
from soulbridge.services.facade import SESSION_ACCOUNT, SESSION_DID, SESSION_TOKEN


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


# ============ End to end ============

def test_identity_verification_issuance_and_bridge(facade, backend, clients, owner):
    async def scenario():
        identity = await facade.create_identity("polygon_amoy")
        request, session = await facade.start_verification(
            identity.did, VerificationLevel.BASIC, {"firstName": "Ada"}
        )

        # Client finished capture; only the background poll may approve
        session.on_complete()
        await facade.verification.drain()
        assert facade.get_verification(request.id).status == VerificationStatus.IN_PROGRESS

        backend.verification_status[request.provider_ref] = {"status": "approved"}
        await wait_until(lambda: facade.get_verification(request.id).status == VerificationStatus.APPROVED)
        await wait_until(lambda: facade.poller.get(f"verification:{request.id}") is None)

        clients["polygon_amoy"].events = {"IdentityVerified": {"tokenId": 5, "did": identity.did}}
        issued = await facade.issue_identity_token(identity.did)

        transfer = await facade.bridge_tokens(
            identity.did, "polygon_amoy", "solana_devnet", SOLANA_ADDRESS, TOKEN_ADDRESS, "10.5"
        )
        polling = facade.poller.get(f"bridge:{transfer.id}") is not None
        await facade.close()
        return identity, issued, transfer, polling

    identity, issued, transfer, polling = run(scenario())

    assert identity.did == f"did:ethr:polygon_amoy:{owner.address.lower()}"
    assert issued.token_id == "5"
    assert issued.chain_identity("polygon_amoy").is_verified
    assert transfer.status == BridgeStatus.SUBMITTED
    assert transfer.payload.amount == 10500000000000000000
    assert polling

    credential = json.loads(clients["polygon_amoy"].calls[0][2][2])
    assert credential["credentialSubject"]["id"] == identity.did
    assert credential["credentialSubject"]["verificationLevel"] == "BASIC"


def test_token_requires_approved_verification(facade, identity, verification, clients):
    with pytest.raises(IdentityNotVerifiedError):
        run(facade.issue_identity_token(identity.did))

    run(verification.submit(identity.did, VerificationLevel.BASIC, {}))
    with pytest.raises(IdentityNotVerifiedError):
        run(facade.issue_identity_token(identity.did))

    assert clients["polygon_amoy"].calls == []


def test_issuance_caches_session(facade, identity, verification, backend, clients, store):
    request, _ = run(verification.submit(identity.did, VerificationLevel.BASIC, {}))
    backend.verification_status[request.provider_ref] = {"status": "clear"}
    run(verification.poll_status(request.id))
    clients["polygon_amoy"].events = {"IdentityVerified": {"tokenId": 3}}

    run(facade.issue_identity_token(identity.did))

    assert store.cache_get(SESSION_DID) == identity.did
    assert store.cache_get(SESSION_TOKEN) == "3"


# ============ Wallets and linking ============

def test_wallet_events_update_cached_account(facade, clients, store, other):
    wallet = clients["polygon"].wallet

    async def scenario():
        await facade.connect_wallet("polygon")
        await facade.connect_wallet("polygon")
        wallet.emit("accountsChanged", [other.address])
        cached = store.cache_get(SESSION_ACCOUNT.format(chain="polygon"))
        await facade.disconnect_all()
        return cached

    assert run(scenario()) == other.address
    assert wallet.listener_count("accountsChanged") == 0
    assert store.cache_get(SESSION_ACCOUNT.format(chain="polygon")) is None


def test_unknown_chain_has_no_provider(facade):
    with pytest.raises(NoProviderError):
        run(facade.connect_wallet("dogechain"))


def test_link_address_signs_with_connected_wallet(facade, identity, owner):
    linked = run(facade.link_address(identity.did, "ethereum"))

    entry = linked.chain_identity("ethereum")
    assert entry.address == owner.address.lower()
    assert not entry.is_verified


def test_link_address_on_token_holder_publishes(facade, verified_identity, clients, owner):
    clients["polygon_amoy"].events = {
        "ChainIdentityAdded": {"tokenId": 1, "chainId": "ethereum", "chainAddress": owner.address}
    }

    linked = run(facade.link_address(verified_identity.did, "ethereum"))

    assert linked.chain_identity("ethereum").is_verified
    assert clients["polygon_amoy"].calls[-1][1] == "addChainIdentity"


# ============ Bridge ============

def test_bridge_identity_requires_token(facade, identity):
    with pytest.raises(IdentityNotVerifiedError):
        run(facade.bridge_identity(identity.did, "polygon", "ethereum", "0x" + "ab" * 20))


def test_bridge_timeout_keeps_polling(facade, verified_identity, clients):
    clients["polygon"].hang = True

    async def scenario():
        with pytest.raises(TransactionTimeoutError):
            await facade.bridge_identity(verified_identity.did, "polygon", "solana_devnet", SOLANA_ADDRESS)
        requests = facade.list_bridge_requests(verified_identity.did)
        polling = facade.poller.get(f"bridge:{requests[0].id}") is not None
        await facade.close()
        return requests, polling

    requests, polling = run(scenario())
    assert len(requests) == 1
    assert requests[0].transaction_hash
    assert polling



def test_missing_bridge_event_ends_poll_until_cancelled(facade, verified_identity, clients):
    clients["polygon"].hang = True
    clients["polygon"].emit_bridge_events = False

    async def scenario():
        with pytest.raises(TransactionTimeoutError):
            await facade.bridge_identity(verified_identity.did, "polygon", "solana_devnet", SOLANA_ADDRESS)
        request = facade.list_bridge_requests(verified_identity.did)[0]
        clients["polygon"].hang = False

        # The receipt has no bridge event: the poll gives up instead of retrying forever
        await wait_until(lambda: facade.poller.get(f"bridge:{request.id}") is None)
        with pytest.raises(BridgeEventMissingError):
            await facade.refresh_bridge_request(request.id)

        cancelled = await facade.cancel_bridge_request(request.id)
        await facade.close()
        return cancelled

    cancelled = run(scenario())
    assert cancelled.status == BridgeStatus.FAILED


def test_cancel_stops_bridge_poll(facade, verified_identity):
    request = facade.bridge.create_request(
        verified_identity.did, "polygon", "solana_devnet", SOLANA_ADDRESS,
        IdentityProofPayload(did=verified_identity.did, token_id="1"),
    )

    async def scenario():
        facade._poll_bridge(request.id)
        handle = facade.poller.get(f"bridge:{request.id}")
        cancelled = await facade.cancel_bridge_request(request.id)
        await asyncio.gather(handle.task, return_exceptions=True)
        return cancelled, handle

    cancelled, handle = run(scenario())
    assert cancelled.status == BridgeStatus.FAILED
    assert not handle.running
    assert facade.poller.get(f"bridge:{request.id}") is None


def test_poll_of_unknown_bridge_request_ends(facade):
    async def scenario():
        facade._poll_bridge("missing")
        await wait_until(lambda: facade.poller.get("bridge:missing") is None)

    run(scenario())


# ============ Token info and review ============

def test_token_info_includes_local_identity(facade, verified_identity, backend):
    backend.tokens["1"] = {"did": verified_identity.did, "tokenId": "1"}

    info = run(facade.get_token_info("1"))

    assert info["tokenId"] == "1"
    assert info["identity"]["did"] == verified_identity.did


def test_token_info_for_unknown_token(facade, backend):
    with pytest.raises(IdentityNotFoundError):
        run(facade.get_token_info("404"))

    async def not_found(token_id):
        raise BackendError("Token not found", 404)

    backend.get_token = not_found
    with pytest.raises(IdentityNotFoundError):
        run(facade.get_token_info("404"))


def test_review_verification_approves_through_poll(facade, identity, verification):
    request, _ = run(verification.submit(identity.did, VerificationLevel.BASIC, {}))

    reviewed = run(facade.review_verification(request.id, True, "ok"))

    assert reviewed.status == VerificationStatus.APPROVED
    assert facade.poller.get(f"verification:{request.id}") is None
    assert run(facade.list_kyc_reviews()) == [{"id": request.provider_ref, "status": "approved"}]



# ============ Session ============

def test_resume_trusts_cache_only_after_backend_confirms(facade, verified_identity, backend, store):
    store.cache_set(SESSION_DID, verified_identity.did)
    store.cache_set(SESSION_TOKEN, "1")
    backend.tokens["1"] = {"did": verified_identity.did}

    resumed = run(facade.resume())

    assert resumed.did == verified_identity.did
    assert backend.count("get_token") == 1


def test_resume_clears_mismatched_cache(facade, verified_identity, backend, store):
    store.cache_set(SESSION_DID, verified_identity.did)
    store.cache_set(SESSION_TOKEN, "1")
    backend.tokens["1"] = {"did": "did:ethr:polygon_amoy:0xsomeoneelse"}

    assert run(facade.resume()) is None
    assert store.cache_get(SESSION_DID) is None
    assert store.cache_get(SESSION_TOKEN) is None


def test_resume_restarts_polling(facade, identity, verification):
    request, _ = run(verification.submit(identity.did, VerificationLevel.BASIC, {}))

    async def scenario():
        await facade.resume()
        polling = facade.poller.get(f"verification:{request.id}") is not None
        await facade.close()
        return polling

    assert run(scenario())
