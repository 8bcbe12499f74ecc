"""Exception hierarchy for PerpGuard.

Guard rejections are *not* exceptions; they are recorded on the trade as a
FAILED status with a reason.  The classes here cover faults that cross a
component boundary.
"""


class PerpGuardError(Exception):
    """Base class for all PerpGuard errors."""


class GatewayError(PerpGuardError):
    """The exchange gateway failed (network, rate limit, rejected order)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecisionValidationError(PerpGuardError, ValueError):
    """An advisor decision failed schema or operation-specific validation."""


class UnsupportedInstrumentError(PerpGuardError, ValueError):
    """A symbol string does not map to a supported instrument."""


class ConfigError(PerpGuardError, ValueError):
    """Required configuration is missing or malformed."""


class AdvisorError(PerpGuardError):
    """The advisor service could not be reached or refused the request."""
