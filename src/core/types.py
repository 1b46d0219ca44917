"""System-wide shared enums: the single source of truth for state vocabularies."""

from __future__ import annotations

from enum import Enum


# ── Principals & Sessions ────────────────────────────────────────

class PrincipalKind(str, Enum):
    USER = "user"
    ADMIN = "admin"
    MANAGER = "manager"


class AdminRole(str, Enum):
    OWNER = "owner"
    SUPER = "super"
    ADMIN = "admin"
    VIEWER = "viewer"


class PermissionLevel(str, Enum):
    HIDDEN = "hidden"
    READ = "read"
    WRITE = "write"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def allows(self, required: PermissionLevel) -> bool:
        return self.rank >= required.rank


_LEVEL_RANK = {
    PermissionLevel.HIDDEN: 0,
    PermissionLevel.READ: 1,
    PermissionLevel.WRITE: 2,
}


class SessionType(str, Enum):
    AUTH = "auth"
    CHECKOUT = "checkout"
    ADMIN = "admin"
    MANAGER = "manager"


class TokenPurpose(str, Enum):
    CHECKOUT = "checkout"
    ACCOUNT = "account"


class AuthFailure(str, Enum):
    """Typed outcome for token and session checks that did not succeed."""

    UNAUTHENTICATED = "unauthenticated"
    TOKEN_REPLAY = "token_replay"
    UNAVAILABLE = "unavailable"


class CheckoutStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# ── Subscriptions ────────────────────────────────────────────────

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PENDING_CANCEL = "pending_cancel"
    SUSPENDED = "suspended"
    CANCELED = "canceled"
    EXPIRED = "expired"
    DELETED = "deleted"

    @property
    def is_live(self) -> bool:
        return self not in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED, SubscriptionStatus.DELETED}
)


class PricePolicy(str, Enum):
    GRANDFATHERED = "grandfathered"
    PROTECTED_UNTIL = "protected_until"
    STANDARD = "standard"


class ChangeMode(str, Enum):
    IMMEDIATE = "immediate"
    RESERVE = "reserve"


class CancelEffective(str, Enum):
    IMMEDIATE = "immediate"
    END_OF_PERIOD = "end_of_period"


class ChangeType(str, Enum):
    """Kind of change recorded in subscription history."""

    NEW = "new"
    TRIAL_START = "trial_start"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RESERVE = "reserve"
    RESERVE_CANCELED = "reserve_canceled"
    RENEW = "renew"
    CANCEL = "cancel"
    CANCEL_SCHEDULED = "cancel_scheduled"
    REACTIVATE = "reactivate"
    EXPIRE = "expire"
    PAST_DUE = "past_due"
    RECOVER = "recover"
    SUSPEND = "suspend"
    ADMIN_EDIT = "admin_edit"
    PRICE_POLICY = "price_policy"


class Actor(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ADMIN = "admin"
