"""Exception taxonomy for escrow-guard.

Chain-mutating failures surface to the caller and are never retried.
Signal-provider failures are recovered inside the risk aggregator and
never reach callers.
"""

from __future__ import annotations


class EscrowGuardError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(EscrowGuardError, ValueError):
    """Malformed input supplied by the caller."""


class ProviderUnavailable(EscrowGuardError):
    """No reachable chain endpoint for the current connector."""


class NoProviderAvailable(ProviderUnavailable):
    """Every candidate endpoint failed its liveness check."""


class DecryptionError(EscrowGuardError):
    """Stored ciphertext is corrupt or does not yield a usable key."""


class KeyMismatchError(DecryptionError):
    """The cipher rejected the ciphertext.

    Raised when the password hash is wrong or the master key was rotated,
    as opposed to the ciphertext itself being damaged.
    """


class ContractCallError(EscrowGuardError):
    """A contract call failed. ``method`` names the contract function."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method


class EscrowIdExtractionError(EscrowGuardError):
    """The escrow was created on chain but its id could not be recovered.

    The on-chain effect already happened, so this needs manual
    reconciliation using ``tx_hash``.
    """

    def __init__(self, tx_hash: str, message: str) -> None:
        super().__init__(
            f"{message} (tx {tx_hash}); escrow exists on chain and needs "
            "manual reconciliation"
        )
        self.tx_hash = tx_hash


class InvalidTransitionError(EscrowGuardError):
    """A lifecycle operation is not allowed from the escrow's current status."""

    def __init__(self, escrow_id: int, current: str, target: str) -> None:
        super().__init__(
            f"Escrow {escrow_id} cannot move from '{current}' to '{target}'"
        )
        self.escrow_id = escrow_id
        self.current = current
        self.target = target


class MirrorNotFoundError(EscrowGuardError):
    """No local mirror document exists for the escrow."""


class SignalProviderError(EscrowGuardError):
    """A single risk signal source failed. Never surfaced to callers."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
