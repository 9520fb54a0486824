"""
SoulBridge Backend API Client
HTTP client for the identity / verification / relay backend.

Every endpoint answers ``{"success": bool, "data": ... | "message": ...}``.
The client unwraps ``data`` and turns ``success: false`` into BackendError.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from soulbridge.config import config
from soulbridge.errors import BackendError, BackendUnavailableError

logger = logging.getLogger(__name__)


def _transient(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class BackendAPI:
    """Async client for the backend REST API."""

    def __init__(
        self,
        base_url: str = None,
        token: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        """
        Args:
            base_url: API root, e.g. http://localhost:3000/api
            token: Bearer token sent with every request
            timeout: Request timeout in seconds
            transport: Optional transport (tests pass httpx.MockTransport)
        """
        self.base_url = (base_url or config.BACKEND_API_URL).rstrip("/")
        self.token = token if token is not None else config.BACKEND_API_TOKEN

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or config.BACKEND_TIMEOUT,
            headers=self._build_headers(),
            transport=transport,
        )

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, json: Dict[str, Any] = None,
                       params: Dict[str, Any] = None) -> Any:
        try:
            response = await self.client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"[!] Backend {method} {path} failed: {e}")
            raise BackendUnavailableError(f"Backend unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            if _transient(response.status_code):
                raise BackendUnavailableError(
                    f"Backend error {response.status_code}", response.status_code
                )
            raise BackendError(
                f"Unexpected backend response ({response.status_code})", response.status_code
            )

        if not body.get("success"):
            message = body.get("message") or f"Backend request failed ({response.status_code})"
            if _transient(response.status_code):
                raise BackendUnavailableError(message, response.status_code)
            raise BackendError(message, response.status_code)

        return body.get("data")

    # ============ Identity ============

    async def register_identity(self, did: str, owner_address: str, chain: str) -> Any:
        return await self._request("POST", "/identity/register", {
            "did": did,
            "ownerAddress": owner_address,
            "chain": chain,
        })

    async def add_chain_identity(self, did: str, chain_id: str, address: str) -> Any:
        return await self._request("POST", "/identity/chain", {
            "did": did,
            "chainId": chain_id,
            "address": address,
        })

    async def update_identity(self, did: str, updates: Dict[str, Any]) -> Any:
        return await self._request("POST", "/identity/update", {"did": did, **updates})

    async def get_token(self, token_id: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/identity/token/{token_id}")

    # ============ Verification ============

    async def request_verification(self, did: str, level: str, applicant: Dict[str, Any]) -> Dict[str, Any]:
        """Returns the provider session data: sdkToken, workflowRunId, verificationId."""
        return await self._request("POST", "/verification/request", {
            "did": did,
            "level": level,
            "applicant": applicant,
        })

    async def get_verification_status(self, verification_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/verification/status/{verification_id}")

    async def complete_verification(self, verification_id: str) -> Any:
        return await self._request("POST", f"/verification/complete/{verification_id}")

    # ============ Bridge ============

    async def send_bridge_message(self, message: Dict[str, Any]) -> Any:
        return await self._request("POST", "/bridge/message", message)

    async def get_transfer(self, transfer_id: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/bridge/transfer/{transfer_id}")

    # ============ Credentials ============

    async def issue_credential(self, credential: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/credential/issue", credential)

    async def verify_credential(self, credential_hash: str) -> Dict[str, Any]:
        return await self._request("POST", "/credential/verify", {"credentialHash": credential_hash})

    async def revoke_credential(self, credential_hash: str, reason: str) -> Any:
        return await self._request("POST", "/credential/revoke", {
            "credentialHash": credential_hash,
            "reason": reason,
        })

    async def get_credential(self, credential_hash: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/credential/{credential_hash}")

    async def get_credentials_for_subject(self, did: str) -> Any:
        return await self._request("GET", f"/credential/subject/{did}")

    async def get_credentials_by_sbt(self, token_id: str) -> Any:
        return await self._request("GET", f"/credential/sbt/{token_id}")

    async def verify_cross_chain(self, credential_hash: str, target_chain: str) -> Dict[str, Any]:
        return await self._request("POST", "/credential/verify-cross-chain", {
            "credentialHash": credential_hash,
            "targetChain": target_chain,
        })

    # ============ Admin ============

    async def list_kyc_verifications(self, status: str = None) -> Any:
        params = {"status": status} if status else None
        return await self._request("GET", "/admin/kyc/verifications", params=params)

    async def approve_kyc(self, verification_id: str, notes: str = "") -> Any:
        return await self._request("POST", f"/admin/kyc/approve/{verification_id}", {"notes": notes})

    async def reject_kyc(self, verification_id: str, notes: str = "") -> Any:
        return await self._request("POST", f"/admin/kyc/reject/{verification_id}", {"notes": notes})

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
