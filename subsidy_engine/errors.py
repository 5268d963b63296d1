"""
Error taxonomy for the subsidy core.

Every error raised across the core boundary derives from SubsidyError and
carries a stable ``kind`` the boundary layer maps onto its own status codes.
Messages are human-readable and never include stack or credential material.
"""

from __future__ import annotations


class SubsidyError(Exception):
    """Base class for all errors surfaced by the core."""

    kind = "Internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class InvalidArgument(SubsidyError):
    """Malformed or out-of-range input, rejected before any mutation."""

    kind = "InvalidArgument"


class NotFound(SubsidyError):
    """Referenced project, milestone, principal or payment is absent."""

    kind = "NotFound"


class Forbidden(SubsidyError):
    """The acting principal's role lacks the capability."""

    kind = "Forbidden"


class Conflict(SubsidyError):
    """State already transitioned or the action duplicates a prior one."""

    kind = "Conflict"


class Unavailable(SubsidyError):
    """An external dependency is down or timed out."""

    kind = "Unavailable"


# ── Payment failures ───────────────────────────────────────────


class GatewayUnavailable(Unavailable):
    """Transient payment-rail failure. Retryable."""

    kind = "GatewayUnavailable"


class InvalidBeneficiary(InvalidArgument):
    """The rail rejected the beneficiary. Permanent, never retried."""

    kind = "InvalidBeneficiary"


class InsufficientFunds(Conflict):
    """Not enough funds to disburse. Permanent, needs Government action."""

    kind = "InsufficientFunds"


class AuditIntegrityError(SubsidyError):
    """Raised when the audit hash chain fails verification."""

    kind = "AuditIntegrityError"
