"""
Exception hierarchy for the Agent Vault.

Every failure aborts the enclosing transaction; the category tells the caller
what has to change before a retry can succeed.
"""
from typing import Optional


class VaultError(Exception):
    """Base exception for all contract-level failures."""

    code: str = "VaultError"
    category: str = "Error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.code
        super().__init__(self.message)

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls.code = cls.__name__


# --- Categories -------------------------------------------------------------

class AuthorizationError(VaultError):
    """Caller lacks the role required by the entry point. Never retried."""

    category = "Authorization"


class PolicyViolation(VaultError):
    """Parameters break a configured limit; change them before retrying."""

    category = "PolicyViolation"


class StateConflict(VaultError):
    """Call conflicts with committed state; re-read state before retrying."""

    category = "StateConflict"


class CircuitBreakerError(VaultError):
    """A pause flag blocks the call until an owner lifts it."""

    category = "CircuitBreaker"


class ExternalFailure(VaultError):
    """A venue or value transfer failed; the transaction was rolled back."""

    category = "ExternalFailure"


# --- Authorization ----------------------------------------------------------

class NotOwner(AuthorizationError):
    pass


class NotAuthorizedExecutor(AuthorizationError):
    pass


# --- Policy -----------------------------------------------------------------

class ExceedsMaxTradeSize(PolicyViolation):
    pass


class MarketNotWhitelisted(PolicyViolation):
    pass


class DailyLossLimitReached(PolicyViolation):
    pass


class OutOfGlobalBounds(PolicyViolation):
    pass


class InvalidRange(PolicyViolation):
    pass


class ArrayLengthMismatch(PolicyViolation):
    pass


class InvalidAmount(PolicyViolation):
    pass


class InvalidConfiguration(PolicyViolation):
    pass


class PositionLimitReached(PolicyViolation):
    pass


# --- State ------------------------------------------------------------------

class PositionNotFound(StateConflict):
    pass


class PositionAlreadyClosed(StateConflict):
    pass


class InsufficientBalance(StateConflict):
    pass


class MarketNotFound(StateConflict):
    pass


class MarketInactive(StateConflict):
    pass


class ReentrantCall(StateConflict):
    pass


class ContractNotFound(StateConflict):
    pass


# --- Circuit breakers -------------------------------------------------------

class Paused(CircuitBreakerError):
    pass


class NotPaused(CircuitBreakerError):
    pass


class GlobalTradingPaused(CircuitBreakerError):
    pass


# --- External ---------------------------------------------------------------

class VenueCallFailed(ExternalFailure):
    pass


class TransferFailed(ExternalFailure):
    pass


class InsufficientLiquidity(ExternalFailure):
    pass
