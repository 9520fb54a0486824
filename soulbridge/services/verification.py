"""
SoulBridge Verification Coordinator
KYC/KYB verification requests and their state machine:

    NONE -> PENDING -> IN_PROGRESS -> APPROVED | REJECTED
    REJECTED -> PENDING (resubmission)

Provider SDK callbacks arrive as messages on an inbox. A completion callback
never approves on its own: only an authoritative status poll does.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from soulbridge.errors import (
    DuplicateVerificationRequestError,
    IdentityNotFoundError,
    InvalidTransitionError,
    RequestNotFoundError,
    SoulBridgeError,
    StaleRequestError,
)
from soulbridge.models import (
    VERIFICATION_TRANSITIONS,
    StatusChange,
    VerificationLevel,
    VerificationRequest,
    VerificationStatus,
)
from soulbridge.services.verification_provider import (
    COMPLETE,
    ERROR,
    STARTED,
    ProviderEvent,
    ProviderSession,
)

logger = logging.getLogger(__name__)


class VerificationCoordinator:
    """Owns VerificationRequest entities."""

    def __init__(self, store, provider):
        self.store = store
        self.provider = provider
        self._listeners: List[Callable[[StatusChange], None]] = []
        self._sessions: Dict[str, ProviderSession] = {}
        self._inbox: asyncio.Queue = asyncio.Queue()

    # ============ Listeners ============

    def add_listener(self, listener: Callable[[StatusChange], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _emit(self, change: StatusChange) -> None:
        for listener in list(self._listeners):
            listener(change)

    # ============ Requests ============

    def get_request(self, request_id: str) -> VerificationRequest:
        request = self.store.get_verification_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"Verification request not found: {request_id}")
        return request

    def latest_for(self, did: str) -> Optional[VerificationRequest]:
        return self.store.get_latest_verification(did)

    async def submit(
        self, did: str, level: VerificationLevel, applicant: Dict
    ) -> Tuple[VerificationRequest, ProviderSession]:
        """
        Start a verification for ``did``.

        The duplicate check runs before the provider is contacted, so a
        rejected submit leaves no provider-side applicant behind.
        """
        identity = self.store.get_identity(did)
        if identity is None:
            raise IdentityNotFoundError(f"Identity not found: {did}")

        active = self.store.get_active_verification(did)
        if active is not None:
            raise DuplicateVerificationRequestError(
                f"{did} already has a {active.status.value} verification", active.id
            )

        latest = self.store.get_latest_verification(did)
        if latest is not None and latest.status == VerificationStatus.APPROVED:
            raise InvalidTransitionError(f"{did} is already verified")

        level = VerificationLevel(level)
        session = await self.provider.init(did, level, applicant)

        request = VerificationRequest(
            did=did,
            level=level,
            provider=self.provider.name,
            provider_ref=session.provider_ref,
        )
        if not self.store.insert_verification_request(request):
            session.tear_down()
            active = self.store.get_active_verification(did)
            raise DuplicateVerificationRequestError(
                f"{did} already has an active verification", active.id if active else ""
            )

        old_status = latest.status if latest is not None else VerificationStatus.NONE
        self._mirror_identity(did, VerificationStatus.PENDING)
        self._emit(StatusChange(request.id, did, old_status.value, VerificationStatus.PENDING.value))

        self._sessions[session.provider_ref] = session.init(self.deliver)
        logger.info(f"[+] Verification {request.id} ({level.value}) started for {did}")
        return request, session

    # ============ Provider events ============

    def deliver(self, event: ProviderEvent) -> None:
        """SDK callback sink. Events are handled in arrival order by drain."""
        self._inbox.put_nowait(event)

    async def drain(self) -> int:
        """Handle every queued provider event. Returns the number handled."""
        handled = 0
        while not self._inbox.empty():
            await self._handle_queued(self._inbox.get_nowait())
            handled += 1
        return handled

    async def _handle_queued(self, event: ProviderEvent) -> None:
        try:
            await self.on_provider_event(event)
        except SoulBridgeError as e:
            logger.warning(f"[!] Provider {event.kind} event for {event.provider_ref} failed: {e.reason}")
        finally:
            self._inbox.task_done()

    async def on_provider_event(self, event: ProviderEvent) -> Optional[VerificationRequest]:
        request = self._request_for_ref(event.provider_ref)
        if request is None:
            logger.warning(f"[!] Provider event for unknown verification {event.provider_ref}")
            return None
        if request.status.is_terminal:
            return request

        if event.kind == STARTED:
            if request.status == VerificationStatus.PENDING:
                self._transition(request, VerificationStatus.IN_PROGRESS)
            return request

        if event.kind == COMPLETE:
            request.client_completed = True
            if request.status == VerificationStatus.PENDING:
                self._transition(request, VerificationStatus.IN_PROGRESS)
            else:
                self.store.update_verification_request(request)

            try:
                await self.provider.notify_complete(request.provider_ref)
            except SoulBridgeError as e:
                request.last_error = e.reason
                self.store.update_verification_request(request)
                logger.warning(f"[!] Completion notice for {request.id} failed: {e.reason}")

            return await self.poll_status(request.id)

        if event.kind == ERROR:
            request.last_error = event.detail or "Provider reported an error"
            self.store.update_verification_request(request)
            logger.warning(f"[!] Provider error on {request.id}: {request.last_error}")
            return request

        logger.warning(f"[!] Ignoring unknown provider event kind '{event.kind}'")
        return request

    def _request_for_ref(self, provider_ref: str) -> Optional[VerificationRequest]:
        for request in self.store.list_active_verification_requests():
            if request.provider_ref == provider_ref:
                return request
        return None

    # ============ Polling ============

    async def poll_status(self, request_id: str) -> VerificationRequest:
        """
        Fetch the authoritative provider status and apply it.

        Idempotent: an unchanged status writes nothing and emits nothing. A
        write that lost a race with another writer is discarded and the
        stored state returned.
        """
        request = self.get_request(request_id)
        if request.status.is_terminal:
            return request

        result = await self.provider.poll_status(request.provider_ref)
        target = result.status
        if target is None or target == request.status:
            return request
        if target not in VERIFICATION_TRANSITIONS[request.status]:
            logger.debug(f"Ignoring provider status {result.provider_status} for {request.id} in {request.status.value}")
            return request

        try:
            self._transition(request, target, result.reason)
        except StaleRequestError:
            logger.info(f"Discarded stale poll result for {request.id}")
            return self.get_request(request_id)

        return request

    def is_terminal(self, request_id: str) -> bool:
        return self.get_request(request_id).status.is_terminal

    # ============ Manual review ============

    async def list_for_review(self, status: Optional[VerificationStatus] = None) -> List[Dict[str, Any]]:
        """Verifications as the provider's review queue sees them."""
        return await self.provider.list_reviews(status.value if status else None)

    async def review(self, request_id: str, approved: bool, notes: str = "") -> VerificationRequest:
        """
        Send an operator decision to the provider, then poll.

        The request only moves once the provider reports the decision, so
        APPROVED still comes from an authoritative poll.
        """
        request = self.get_request(request_id)
        if request.status.is_terminal:
            raise InvalidTransitionError(
                f"Verification {request.id} is already {request.status.value}"
            )

        await self.provider.review(request.provider_ref, approved, notes)
        logger.info(f"[+] Review for {request.id} sent: {'approve' if approved else 'reject'}")
        return await self.poll_status(request_id)

    # ============ State machine ============

    def _transition(self, request: VerificationRequest, new_status: VerificationStatus,
                    reason: str = None) -> None:
        old_status = request.status
        if new_status not in VERIFICATION_TRANSITIONS[old_status]:
            raise InvalidTransitionError(
                f"Verification {request.id} cannot go from {old_status.value} to {new_status.value}"
            )

        request.status = new_status
        if new_status == VerificationStatus.REJECTED:
            request.rejection_reason = reason or "Verification rejected by provider"
        try:
            self.store.update_verification_request(request)
        except StaleRequestError:
            request.status = old_status
            raise

        self._mirror_identity(request.did, new_status)
        if new_status.is_terminal:
            session = self._sessions.pop(request.provider_ref, None)
            if session is not None:
                session.tear_down()

        logger.info(f"[+] Verification {request.id}: {old_status.value} -> {new_status.value}")
        self._emit(StatusChange(request.id, request.did, old_status.value, new_status.value))

    def _mirror_identity(self, did: str, status: VerificationStatus) -> None:
        identity = self.store.get_identity(did)
        # An issued token pins the identity at APPROVED
        if identity is None or identity.token_id is not None:
            return
        identity.verification_status = status
        self.store.update_identity(identity)
