import pytest
from fastapi.testclient import TestClient

from conftest import SOLANA_ADDRESS, TOKEN_ADDRESS, run
import soulbridge.services as services
from soulbridge.config import config
from soulbridge.models import VerificationLevel
from soulbridge.main import app


@pytest.fixture
def client(facade, monkeypatch):
    monkeypatch.setattr(services, "_facade", facade)
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert isinstance(response.json()["backend_configured"], bool)


def test_create_and_fetch_identity(client, owner):
    response = client.post("/api/identity", json={"chain": "polygon_amoy"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"]
    did = body["data"]["did"]
    assert did == f"did:ethr:polygon_amoy:{owner.address.lower()}"

    fetched = client.get(f"/api/identity/{did}").json()["data"]
    assert fetched["ownerChain"] == "polygon_amoy"
    assert fetched["tokenId"] is None


def test_unknown_identity_is_404(client):
    response = client.get("/api/identity/did:ethr:polygon_amoy:0x0")
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "IdentityNotFoundError"
    assert body["message"]


def test_link_challenge(client, owner):
    response = client.get("/api/link-challenge", params={"chain": "ethereum", "address": owner.address})
    assert response.json()["data"]["message"] == f"Link ethereum address {owner.address} to your account"


def test_token_before_verification_is_rejected(client, identity):
    response = client.post(f"/api/identity/{identity.did}/token")
    assert response.status_code == 400
    assert response.json()["error"] == "IdentityNotVerifiedError"


def test_duplicate_bridge_request_is_409(client, verified_identity):
    payload = {
        "did": verified_identity.did,
        "source_chain": "polygon",
        "target_chain": "solana_devnet",
        "target_address": SOLANA_ADDRESS,
        "token_address": TOKEN_ADDRESS,
        "amount": "10.5",
    }
    first = client.post("/api/bridge/tokens", json=payload)
    assert first.status_code == 200
    first_id = first.json()["data"]["id"]

    second = client.post("/api/bridge/tokens", json=payload)
    assert second.status_code == 409
    assert second.json()["existingId"] == first_id

    listed = client.get("/api/bridge", params={"did": verified_identity.did}).json()["data"]
    assert [t["id"] for t in listed] == [first_id]


def test_verification_flow_over_http(client, identity, backend):
    started = client.post("/api/verification", json={"did": identity.did, "level": "BASIC"}).json()["data"]
    request_id = started["request"]["id"]
    provider_ref = started["session"]["providerRef"]
    assert started["request"]["status"] == "PENDING"

    handled = client.post("/api/verification/events", json={"provider_ref": provider_ref, "kind": "complete"})
    assert handled.json()["data"]["handled"] == 1

    backend.verification_status[provider_ref] = {"status": "approved"}
    refreshed = client.post(f"/api/verification/{request_id}/refresh").json()["data"]
    assert refreshed["status"] == "APPROVED"


def test_did_document_route(client, verified_identity, owner):
    response = client.get(f"/api/identity/{verified_identity.did}/document")
    assert response.status_code == 200
    document = response.json()["data"]["didDocument"]
    assert document["id"] == verified_identity.did
    assert f"eip155:137:{owner.address}" in [m.get("blockchainAccountId") for m in document["verificationMethod"]]


def test_cancel_bridge_route(client, verified_identity, clients):
    clients["polygon"].emit_bridge_events = False
    payload = {
        "did": verified_identity.did,
        "source_chain": "polygon",
        "target_chain": "solana_devnet",
        "target_address": SOLANA_ADDRESS,
        "token_address": TOKEN_ADDRESS,
        "amount": "1",
    }
    stuck = client.post("/api/bridge/tokens", json=payload)
    assert stuck.json()["error"] == "BridgeEventMissingError"
    request_id = client.get("/api/bridge", params={"did": verified_identity.did}).json()["data"][0]["id"]

    cancelled = client.post(f"/api/bridge/{request_id}/cancel").json()["data"]
    assert cancelled["status"] == "FAILED"

    # Cancelling again is an invalid transition
    assert client.post(f"/api/bridge/{request_id}/cancel").status_code == 400


# ============ Credentials ============

def test_credential_routes(client, verified_identity):
    issued = client.post("/api/credential/issue", json={
        "subject_did": verified_identity.did,
        "credential_type": "KYCCredential",
        "claims": {"level": "BASIC"},
    })
    assert issued.status_code == 200
    credential_hash = issued.json()["data"]["credential_hash"]

    assert client.get(f"/api/credential/{credential_hash}").json()["data"]["status"] == "ACTIVE"
    assert client.post("/api/credential/verify", json={"credential_hash": credential_hash}).json()["data"]["valid"]
    listed = client.get(f"/api/credential/subject/{verified_identity.did}", params={"status": "ACTIVE"})
    assert [c["credential_hash"] for c in listed.json()["data"]] == [credential_hash]
    assert len(client.get("/api/credential/sbt/1").json()["data"]) == 1

    revoked = client.post("/api/credential/revoke", json={"credential_hash": credential_hash})
    assert revoked.json()["data"]["status"] == "REVOKED"


def test_unknown_credential_is_404(client):
    response = client.get("/api/credential/0xmissing")
    assert response.status_code == 404
    assert response.json()["error"] == "CredentialNotFoundError"


def test_credential_needs_token_holder(client, identity):
    response = client.post("/api/credential/issue", json={
        "subject_did": identity.did,
        "credential_type": "KYCCredential",
    })
    assert response.status_code == 400
    assert response.json()["error"] == "IdentityNotVerifiedError"


# ============ Admin ============

def test_admin_routes_require_token(client, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", "s3cret")

    assert client.get("/api/admin/kyc/verifications").status_code == 401
    wrong = client.get("/api/admin/kyc/verifications", headers={"X-Admin-Token": "guess"})
    assert wrong.status_code == 401

    allowed = client.get("/api/admin/kyc/verifications", headers={"X-Admin-Token": "s3cret"})
    assert allowed.status_code == 200
    assert allowed.json()["data"] == []


def test_admin_review_over_http(client, identity, verification, backend, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", "s3cret")
    request, _ = run(verification.submit(identity.did, VerificationLevel.BASIC, {}))

    queue = client.get(
        "/api/admin/kyc/verifications", params={"status": "PENDING"}, headers={"X-Admin-Token": "s3cret"}
    ).json()["data"]
    assert queue == [{"id": request.provider_ref, "status": "pending"}]
    assert backend.calls[-1] == ("list_kyc_verifications", "PENDING")

    rejected = client.post(
        f"/api/admin/kyc/reject/{request.id}", json={"notes": "expired passport"},
        headers={"X-Admin-Token": "s3cret"},
    ).json()["data"]
    assert rejected["status"] == "REJECTED"
    assert rejected["rejectionReason"] == "expired passport"
