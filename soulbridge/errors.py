"""
SoulBridge Error Taxonomy

Every error carries a human-readable ``reason``. ``retryable`` marks errors a
caller may simply try again (after user action or on the next poll tick);
``ambiguous`` marks on-chain outcomes that must be resolved against chain state
before anything is resubmitted.
"""

from typing import Optional


class SoulBridgeError(Exception):
    """Base class for all orchestration errors."""

    retryable = False
    ambiguous = False

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# ============ Wallet / chain ============

class NoProviderError(SoulBridgeError):
    """No wallet provider is available for the chain family."""


class UserRejectedError(SoulBridgeError):
    """The wallet owner declined the request."""

    retryable = True


class NetworkUnavailableError(SoulBridgeError):
    """The wallet could neither switch to nor register the network."""


class ConcurrentRequestError(SoulBridgeError):
    """Another signature or transaction is outstanding on this wallet."""

    retryable = True


class ChainRpcError(SoulBridgeError):
    """Transport or node failure on a chain RPC call; the next attempt may succeed."""

    retryable = True


class TransactionRevertedError(SoulBridgeError):
    """The transaction was mined but reverted."""

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        super().__init__(reason)
        self.tx_hash = tx_hash


class TransactionTimeoutError(SoulBridgeError):
    """No receipt arrived before the deadline; the transaction may still mine."""

    ambiguous = True

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"No receipt for {tx_hash} within {timeout:g}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


# ============ Identity ============

class SignatureMismatchError(SoulBridgeError):
    """The signature does not prove control of the claimed address."""


class NoLinkedAddressError(SoulBridgeError):
    """No wallet address is linked to the caller."""


class IdentityNotFoundError(SoulBridgeError):
    pass


class ChainIdentityNotFoundError(SoulBridgeError):
    pass


class TokenAlreadyIssuedError(SoulBridgeError):
    """The identity already holds a Soulbound token."""


class IssuanceEventMissingError(SoulBridgeError):
    """Issuance confirmed on-chain but the IdentityVerified event is absent."""

    ambiguous = True

    def __init__(self, tx_hash: str):
        super().__init__(
            f"Transaction {tx_hash} confirmed without an IdentityVerified event"
        )
        self.tx_hash = tx_hash


class IssuancePendingError(SoulBridgeError):
    """An earlier issuance transaction has not been resolved yet."""

    ambiguous = True

    def __init__(self, tx_hash: str):
        super().__init__(
            f"Issuance transaction {tx_hash} is unresolved; check its status before resubmitting"
        )
        self.tx_hash = tx_hash


class BridgeEventMissingError(SoulBridgeError):
    """The bridge transaction confirmed but the contract emitted no request event."""

    ambiguous = True

    def __init__(self, tx_hash: str, event_name: str):
        super().__init__(f"Transaction {tx_hash} confirmed without a {event_name} event")
        self.tx_hash = tx_hash
        self.event_name = event_name


# ============ Credentials ============

class CredentialNotFoundError(SoulBridgeError):
    pass


# ============ Preconditions ============

class IdentityNotVerifiedError(SoulBridgeError):
    pass


class NoSourceIdentityError(SoulBridgeError):
    pass


class InvalidAddressError(SoulBridgeError):
    pass


class InvalidRouteError(SoulBridgeError):
    pass


class InvalidAmountError(SoulBridgeError):
    pass


class DuplicateRequestError(SoulBridgeError):
    """A non-terminal request already exists for the same key."""

    def __init__(self, reason: str, existing_id: str):
        super().__init__(reason)
        self.existing_id = existing_id


class DuplicateBridgeRequestError(DuplicateRequestError):
    pass


class DuplicateVerificationRequestError(DuplicateRequestError):
    pass


# ============ Request tracking ============

class RequestNotFoundError(SoulBridgeError):
    pass


class InvalidTransitionError(SoulBridgeError):
    pass


class StaleRequestError(SoulBridgeError):
    """The request changed since it was read; the write was rejected."""

    retryable = True


# ============ Backend ============

class BackendError(SoulBridgeError):
    """The backend answered with ``success: false``."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.status_code = status_code


class BackendUnavailableError(BackendError):
    """Transport failure talking to the backend."""

    retryable = True
