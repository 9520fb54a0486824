"""
SoulBridge Verification Provider Adapter
KYC/KYB provider integration (Onfido-style workflow runs) through the backend.

The provider's document-capture SDK lives in the client. Here it is modeled
by ``ProviderSession``: the SDK token and workflow run returned by the
backend, plus the callbacks the SDK fires. Callbacks only ever produce
``ProviderEvent`` messages; the authoritative status comes from polling.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from soulbridge.config import config
from soulbridge.models import VerificationLevel, VerificationStatus, now

logger = logging.getLogger(__name__)


# Provider event kinds
STARTED = "started"
COMPLETE = "complete"
ERROR = "error"


@dataclass(frozen=True)
class ProviderEvent:
    """A provider SDK callback, delivered to the coordinator as a message."""
    provider_ref: str
    kind: str  # STARTED, COMPLETE or ERROR
    detail: Optional[str] = None
    at: float = field(default_factory=now)


@dataclass
class ProviderStatusResult:
    """Authoritative provider status mapped onto our vocabulary."""
    status: Optional[VerificationStatus]  # None when the provider status is unknown
    provider_status: str
    reason: Optional[str] = None


class ProviderSession:
    """
    Client-side SDK session for one verification.

    ``init`` registers the SDK callbacks; ``tear_down`` detaches them so late
    callbacks from an abandoned session are dropped.
    """

    def __init__(self, sdk_token: str, workflow_run_id: str, provider_ref: str,
                 workflow_id: str = ""):
        self.sdk_token = sdk_token
        self.workflow_run_id = workflow_run_id
        self.provider_ref = provider_ref
        self.workflow_id = workflow_id
        self._sink: Optional[Callable[[ProviderEvent], Any]] = None

    @property
    def active(self) -> bool:
        return self._sink is not None

    def init(self, sink: Callable[[ProviderEvent], Any]) -> "ProviderSession":
        """Attach the SDK callbacks. ``sink`` receives every ProviderEvent."""
        self._sink = sink
        return self

    def on_start(self) -> None:
        self._emit(STARTED)

    def on_complete(self, data: Dict[str, Any] = None) -> None:
        self._emit(COMPLETE)

    def on_error(self, error: Any) -> None:
        self._emit(ERROR, str(error))

    def _emit(self, kind: str, detail: str = None) -> None:
        if self._sink is None:
            logger.debug(f"Dropped {kind} callback for torn-down session {self.provider_ref}")
            return
        self._sink(ProviderEvent(self.provider_ref, kind, detail))

    def tear_down(self) -> None:
        self._sink = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sdkToken": self.sdk_token,
            "workflowRunId": self.workflow_run_id,
            "workflowId": self.workflow_id,
            "providerRef": self.provider_ref,
        }


class OnfidoAdapter:
    """
    Onfido workflow adapter.

    Provider statuses are mapped as follows; anything else is unknown and
    leaves the request where it is.
    """

    name = "onfido"

    STATUS_MAP = {
        "created": VerificationStatus.PENDING,
        "pending": VerificationStatus.PENDING,
        "awaiting_input": VerificationStatus.PENDING,
        "in_progress": VerificationStatus.IN_PROGRESS,
        "processing": VerificationStatus.IN_PROGRESS,
        "review": VerificationStatus.IN_PROGRESS,
        "completed": VerificationStatus.IN_PROGRESS,  # finished capture, not yet decided
        "approved": VerificationStatus.APPROVED,
        "verified": VerificationStatus.APPROVED,
        "clear": VerificationStatus.APPROVED,
        "rejected": VerificationStatus.REJECTED,
        "declined": VerificationStatus.REJECTED,
        "failed": VerificationStatus.REJECTED,
        "abandoned": VerificationStatus.REJECTED,
        "consider": VerificationStatus.REJECTED,
    }

    def __init__(self, backend, workflow_id: str = None):
        self.backend = backend
        self.workflow_id = workflow_id if workflow_id is not None else config.ONFIDO_WORKFLOW_ID

    async def init(self, did: str, level: VerificationLevel, applicant: Dict[str, Any]) -> ProviderSession:
        """Create the provider-side applicant and workflow run."""
        data = await self.backend.request_verification(did, level.value, {
            **applicant,
            "workflowId": self.workflow_id,
        })
        session = ProviderSession(
            sdk_token=data.get("sdkToken", ""),
            workflow_run_id=data.get("workflowRunId", ""),
            provider_ref=str(data.get("verificationId") or data.get("id")),
            workflow_id=self.workflow_id,
        )
        logger.info(f"[+] {self.name} workflow run {session.workflow_run_id} created for {did}")
        return session

    async def poll_status(self, provider_ref: str) -> ProviderStatusResult:
        data = await self.backend.get_verification_status(provider_ref) or {}
        provider_status = str(data.get("status", "")).lower()
        status = self.map_status(provider_status)

        reason = None
        if status == VerificationStatus.REJECTED:
            reason = (
                data.get("reason")
                or data.get("rejectionReason")
                or f"Verification {provider_status} by {self.name}"
            )
        return ProviderStatusResult(status=status, provider_status=provider_status, reason=reason)

    async def notify_complete(self, provider_ref: str) -> None:
        await self.backend.complete_verification(provider_ref)

    async def list_reviews(self, status: str = None) -> List[Dict[str, Any]]:
        data = await self.backend.list_kyc_verifications(status)
        if isinstance(data, dict):
            data = data.get("verifications", [])
        return data or []

    async def review(self, provider_ref: str, approved: bool, notes: str = "") -> None:
        """Record an operator decision on a run the provider left for manual review."""
        if approved:
            await self.backend.approve_kyc(provider_ref, notes)
        else:
            await self.backend.reject_kyc(provider_ref, notes)

    def map_status(self, provider_status: str) -> Optional[VerificationStatus]:
        status = self.STATUS_MAP.get(provider_status)
        if status is None:
            logger.warning(f"[!] Unknown {self.name} status '{provider_status}', keeping current state")
        return status


PROVIDERS = {
    OnfidoAdapter.name: OnfidoAdapter,
}


def create_provider(backend, name: str = None):
    name = name or config.VERIFICATION_PROVIDER
    try:
        return PROVIDERS[name](backend)
    except KeyError:
        raise ValueError(f"Unsupported verification provider: {name}") from None
