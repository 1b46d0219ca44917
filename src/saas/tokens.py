"""SSO token verification with first-use-wins semantics.

Tokens are ``itsdangerous`` timed signatures over ``{email, purpose, nonce}``.
The first successful verification writes a usage record with the store's
create-if-absent primitive, so two concurrent verifications of the same
token cannot both count as the first consumption. Re-presenting a consumed
token inside the grace window (page reload, back navigation) returns the
same identity; afterwards it is a replay.

Failures come back as ``AuthFailure`` members. Nothing here raises into the
caller for a bad or reused token.
"""

from __future__ import annotations

import hashlib
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from itsdangerous import BadSignature, URLSafeTimedSerializer
from pydantic import ValidationError

from src.core.constants import (
    COLLECTION_SSO_TOKENS,
    DEV_BYPASS_TOKEN,
    MANAGER_BILLING_PURPOSE,
    MANAGER_BILLING_TOKEN_SALT,
    SSO_TOKEN_SALT,
)
from src.core.exceptions import StoreUnavailableError
from src.core.logging import get_logger
from src.core.types import AuthFailure, TokenPurpose
from src.saas.models import SSOTokenUsage
from src.store.base import CredentialStore

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def token_fingerprint(token: str) -> str:
    """SHA-256 hex digest; the only form in which a token is stored or logged."""
    return hashlib.sha256(token.encode()).hexdigest()


def issue_sso_token(secret: str, email: str, purpose: TokenPurpose | str) -> str:
    """Sign a one-time SSO token (portal side; also used by tests)."""
    serializer = URLSafeTimedSerializer(secret, salt=SSO_TOKEN_SALT)
    return serializer.dumps(
        {
            "email": email,
            "purpose": TokenPurpose(purpose).value,
            "nonce": secrets.token_urlsafe(8),
        }
    )


@dataclass(frozen=True)
class SSOIdentity:
    email: str
    purpose: TokenPurpose
    issued_at: datetime
    first_use: bool


class TokenVerifier:
    """Verifies SSO tokens against their signature window and usage record."""

    def __init__(
        self,
        store: CredentialStore,
        secret: str,
        *,
        max_age_seconds: int = 600,
        grace_seconds: int = 600,
        dev_bypass: bool = False,
        dev_email: str = "test@example.com",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._serializer = URLSafeTimedSerializer(secret, salt=SSO_TOKEN_SALT)
        self._secret = secret
        self._max_age = max_age_seconds
        self._grace = grace_seconds
        self._dev_bypass = dev_bypass
        self._dev_email = dev_email
        self._clock = clock

    def issue(self, email: str, purpose: TokenPurpose | str) -> str:
        return issue_sso_token(self._secret, email, purpose)

    @property
    def usage_ttl_seconds(self) -> int:
        # A replay must still find the record after the grace window closes.
        return max(self._max_age, self._grace)

    async def verify(self, token: str | None) -> SSOIdentity | AuthFailure:
        if not token:
            return AuthFailure.UNAUTHENTICATED

        now = self._clock()
        if self._dev_bypass and token == DEV_BYPASS_TOKEN:
            log.warning("sso_dev_bypass_used", email=self._dev_email)
            return SSOIdentity(self._dev_email, TokenPurpose.ACCOUNT, now, first_use=True)

        fingerprint = token_fingerprint(token)
        claims = self._decode(token, fingerprint, now)
        if claims is None:
            return AuthFailure.UNAUTHENTICATED
        email, purpose, issued_at = claims

        usage = SSOTokenUsage(
            email=email,
            purpose=purpose,
            issued_at=issued_at,
            used_at=now,
            grace_expires_at=now + timedelta(seconds=self._grace),
        )
        try:
            created = await self._store.create(
                COLLECTION_SSO_TOKENS,
                fingerprint,
                usage.to_doc(),
                ttl_seconds=self.usage_ttl_seconds,
            )
            if created:
                log.info("sso_token_consumed", token=fingerprint[:12], purpose=purpose.value)
                return SSOIdentity(email, purpose, issued_at, first_use=True)
            existing = await self._store.get(COLLECTION_SSO_TOKENS, fingerprint)
        except StoreUnavailableError:
            log.error("sso_token_store_unavailable", token=fingerprint[:12])
            return AuthFailure.UNAVAILABLE

        if existing is None:
            # Record vanished between create and get; fail closed.
            log.warning("sso_token_usage_missing", token=fingerprint[:12])
            return AuthFailure.TOKEN_REPLAY
        try:
            prior = SSOTokenUsage.from_doc(existing)
        except ValidationError:
            log.error("sso_token_usage_corrupt", token=fingerprint[:12])
            return AuthFailure.UNAUTHENTICATED

        if now < prior.grace_expires_at and prior.email == email:
            log.info("sso_token_reused_in_grace", token=fingerprint[:12])
            return SSOIdentity(email, purpose, issued_at, first_use=False)

        log.warning("sso_token_replay", token=fingerprint[:12])
        return AuthFailure.TOKEN_REPLAY

    async def verify_email(self, token: str | None) -> str | None:
        outcome = await self.verify(token)
        if isinstance(outcome, AuthFailure):
            return None
        return outcome.email

    def _decode(
        self, token: str, fingerprint: str, now: datetime
    ) -> tuple[str, TokenPurpose, datetime] | None:
        try:
            payload, issued_at = self._serializer.loads(token, return_timestamp=True)
        except BadSignature:
            log.info("sso_token_bad_signature", token=fingerprint[:12])
            return None

        if (now - issued_at).total_seconds() > self._max_age:
            log.info("sso_token_expired", token=fingerprint[:12])
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("email"), str):
            log.info("sso_token_malformed", token=fingerprint[:12])
            return None
        try:
            purpose = TokenPurpose(payload.get("purpose"))
        except ValueError:
            log.info("sso_token_bad_purpose", token=fingerprint[:12], purpose=payload.get("purpose"))
            return None
        return payload["email"], purpose, issued_at


# ── Manager billing hand-off ─────────────────────────────────────

@dataclass(frozen=True)
class ManagerBillingClaim:
    manager_id: str
    login_id: str
    issued_at: datetime


class ManagerBillingTokens:
    """Short-lived signed hand-off from a portal manager session to the billing site.

    The receiving side must re-read the manager before opening a session.
    """

    def __init__(
        self,
        secret: str,
        *,
        max_age_seconds: int = 600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._serializer = URLSafeTimedSerializer(secret, salt=MANAGER_BILLING_TOKEN_SALT)
        self._max_age = max_age_seconds
        self._clock = clock

    def issue(self, manager_id: str, login_id: str) -> str:
        return self._serializer.dumps(
            {
                "managerId": manager_id,
                "loginId": login_id,
                "purpose": MANAGER_BILLING_PURPOSE,
            }
        )

    def verify(self, token: str | None) -> ManagerBillingClaim | AuthFailure:
        if not token:
            return AuthFailure.UNAUTHENTICATED
        try:
            payload, issued_at = self._serializer.loads(token, return_timestamp=True)
        except BadSignature:
            log.info("manager_billing_token_invalid")
            return AuthFailure.UNAUTHENTICATED
        if (self._clock() - issued_at).total_seconds() > self._max_age:
            log.info("manager_billing_token_expired")
            return AuthFailure.UNAUTHENTICATED
        if not isinstance(payload, dict) or payload.get("purpose") != MANAGER_BILLING_PURPOSE:
            return AuthFailure.UNAUTHENTICATED
        manager_id = payload.get("managerId")
        login_id = payload.get("loginId")
        if not isinstance(manager_id, str) or not isinstance(login_id, str):
            return AuthFailure.UNAUTHENTICATED
        return ManagerBillingClaim(manager_id, login_id, issued_at)
