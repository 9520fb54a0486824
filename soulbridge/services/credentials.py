"""
SoulBridge Credential Service
Verifiable credentials anchored to an identity's Soulbound token.

Credentials are stored and signed by the backend. This service checks the
local preconditions first (an active identity holding a token) so a request
that cannot succeed never reaches the backend.
"""

import logging
from typing import Any, Dict, List, Optional

from soulbridge.config import config
from soulbridge.errors import (
    BackendError,
    CredentialNotFoundError,
    IdentityNotFoundError,
    IdentityNotVerifiedError,
    InvalidRouteError,
)
from soulbridge.networks import NETWORKS

logger = logging.getLogger(__name__)


def _credential_list(data: Any) -> List[Dict[str, Any]]:
    # Listing endpoints answer either a bare list or {"credentials": [...]}
    if isinstance(data, dict):
        data = data.get("credentials", [])
    return data or []


class CredentialService:
    """Issue, verify, revoke and look up credentials."""

    def __init__(self, store, backend, issuer_did: str = None):
        self.store = store
        self.backend = backend
        self.issuer_did = issuer_did or config.CREDENTIAL_ISSUER_DID

    def _token_holder(self, did: str):
        identity = self.store.get_identity(did)
        if identity is None:
            raise IdentityNotFoundError(f"Identity not found: {did}")
        if not identity.is_active or identity.token_id is None:
            raise IdentityNotVerifiedError(f"{did} holds no active Soulbound token")
        return identity

    async def issue(self, subject_did: str, credential_type: str, claims: Dict[str, Any],
                    expiration_date: Optional[str] = None) -> Dict[str, Any]:
        """
        Issue a credential to ``subject_did``.

        Args:
            subject_did: DID the credential is about; must hold a token
            credential_type: e.g. "KYCCredential"
            claims: Credential subject claims
            expiration_date: Optional ISO 8601 expiry
        """
        identity = self._token_holder(subject_did)
        credential = await self.backend.issue_credential({
            "issuerDid": self.issuer_did,
            "subjectDid": identity.did,
            "tokenId": identity.token_id,
            "credentialType": credential_type,
            "claims": claims,
            "expirationDate": expiration_date,
        })
        logger.info(f"[+] Issued {credential_type} credential to {identity.did}")
        return credential

    async def verify(self, credential_hash: str) -> Dict[str, Any]:
        return await self.backend.verify_credential(credential_hash)

    async def revoke(self, credential_hash: str, reason: str) -> Dict[str, Any]:
        credential = await self.get(credential_hash)
        if credential.get("status") == "REVOKED":
            return credential
        await self.backend.revoke_credential(credential_hash, reason)
        logger.info(f"[+] Revoked credential {credential_hash}: {reason}")
        return await self.get(credential_hash)

    async def get(self, credential_hash: str) -> Dict[str, Any]:
        try:
            credential = await self.backend.get_credential(credential_hash)
        except BackendError as e:
            if e.status_code == 404:
                raise CredentialNotFoundError(f"Credential not found: {credential_hash}") from e
            raise
        if not credential:
            raise CredentialNotFoundError(f"Credential not found: {credential_hash}")
        return credential

    async def list_for_subject(self, did: str, status: str = None,
                               credential_type: str = None) -> List[Dict[str, Any]]:
        """Credentials about ``did``, optionally filtered by status and type."""
        credentials = _credential_list(await self.backend.get_credentials_for_subject(did))
        if status:
            credentials = [c for c in credentials if c.get("status") == status]
        if credential_type:
            credentials = [c for c in credentials if c.get("credential_type") == credential_type]
        return credentials

    async def list_for_token(self, token_id: str) -> List[Dict[str, Any]]:
        return _credential_list(await self.backend.get_credentials_by_sbt(token_id))

    async def verify_cross_chain(self, credential_hash: str, target_chain: str) -> Dict[str, Any]:
        """Check a credential against the Soulbound token mirrored on ``target_chain``."""
        if target_chain not in NETWORKS:
            raise InvalidRouteError(f"Unsupported chain: {target_chain}")
        return await self.backend.verify_cross_chain(credential_hash, target_chain)
