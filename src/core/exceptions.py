"""Custom exception hierarchy for the billing core."""

from __future__ import annotations

from typing import Any


class BillingBaseError(Exception):
    """Base exception for all billing-core errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}


# ── Authentication ───────────────────────────────────────────────

class UnauthenticatedError(BillingBaseError):
    """Missing, expired or invalid session or token."""


class UnauthorizedError(BillingBaseError):
    """Principal lacks the permission level required for the action."""


# ── Principals ───────────────────────────────────────────────────

class PrincipalConflictError(BillingBaseError):
    """Duplicate login id or a forbidden edit of a principal record."""


class PrincipalNotFoundError(BillingBaseError):
    """Referenced admin, manager or subscription does not exist."""


# ── Subscription Lifecycle ───────────────────────────────────────

class IllegalTransitionError(BillingBaseError):
    """Subscription transition requested from a state that does not allow it."""

    def __init__(
        self,
        reason: str,
        *,
        tenant_id: str,
        current_status: str | None,
        transition: str,
    ) -> None:
        super().__init__(
            reason,
            {
                "tenant_id": tenant_id,
                "current_status": current_status,
                "transition": transition,
            },
        )
        self.reason = reason
        self.tenant_id = tenant_id
        self.current_status = current_status
        self.transition = transition


class AlreadySubscribedError(IllegalTransitionError):
    """start() called on a tenant that already holds a live subscription."""


# ── Infrastructure ───────────────────────────────────────────────

class StoreUnavailableError(BillingBaseError):
    """Credential store unreachable or timed out."""
