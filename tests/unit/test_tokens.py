"""Tests for SSO token verification and manager billing tokens."""

from __future__ import annotations

import asyncio

import pytest

from src.core.constants import COLLECTION_SSO_TOKENS
from src.core.exceptions import StoreUnavailableError
from src.core.types import AuthFailure, TokenPurpose
from src.saas.tokens import (
    ManagerBillingTokens,
    SSOIdentity,
    TokenVerifier,
    issue_sso_token,
    token_fingerprint,
)
from src.store.base import Document
from src.store.memory import MemoryStore

SECRET = "unit-test-secret"


class DownStore(MemoryStore):
    async def _create(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> bool:
        raise StoreUnavailableError("down")


@pytest.fixture()
def verifier(store: MemoryStore, clock) -> TokenVerifier:
    return TokenVerifier(store, SECRET, max_age_seconds=600, grace_seconds=120, clock=clock)


class TestTokenVerifier:
    @pytest.mark.asyncio
    async def test_first_use_returns_identity(self, verifier: TokenVerifier) -> None:
        token = issue_sso_token(SECRET, "kim@example.com", TokenPurpose.CHECKOUT)
        outcome = await verifier.verify(token)

        assert isinstance(outcome, SSOIdentity)
        assert outcome.email == "kim@example.com"
        assert outcome.purpose is TokenPurpose.CHECKOUT
        assert outcome.first_use is True

    @pytest.mark.asyncio
    async def test_usage_record_keyed_by_fingerprint(
        self, verifier: TokenVerifier, store: MemoryStore
    ) -> None:
        token = verifier.issue("kim@example.com", "account")
        await verifier.verify(token)

        assert await store.get(COLLECTION_SSO_TOKENS, token) is None
        doc = await store.get(COLLECTION_SSO_TOKENS, token_fingerprint(token))
        assert doc is not None
        assert doc["email"] == "kim@example.com"
        assert "graceExpiresAt" in doc

    @pytest.mark.asyncio
    async def test_reuse_inside_grace_window(self, verifier: TokenVerifier, clock) -> None:
        token = verifier.issue("kim@example.com", "account")
        await verifier.verify(token)
        clock.advance(seconds=60)

        again = await verifier.verify(token)
        assert isinstance(again, SSOIdentity)
        assert again.email == "kim@example.com"
        assert again.first_use is False

    @pytest.mark.asyncio
    async def test_replay_after_grace_window(self, verifier: TokenVerifier, clock) -> None:
        token = verifier.issue("kim@example.com", "account")
        await verifier.verify(token)
        clock.advance(seconds=121)

        assert await verifier.verify(token) is AuthFailure.TOKEN_REPLAY

    @pytest.mark.asyncio
    async def test_concurrent_first_use_counts_once(self, verifier: TokenVerifier) -> None:
        token = verifier.issue("kim@example.com", "checkout")
        outcomes = await asyncio.gather(*(verifier.verify(token) for _ in range(5)))

        identities = [o for o in outcomes if isinstance(o, SSOIdentity)]
        assert len(identities) == 5
        assert sum(1 for o in identities if o.first_use) == 1

    @pytest.mark.asyncio
    async def test_expired_signature(self, verifier: TokenVerifier, clock) -> None:
        token = verifier.issue("kim@example.com", "account")
        clock.advance(seconds=605)
        assert await verifier.verify(token) is AuthFailure.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_tampered_or_foreign_token(self, verifier: TokenVerifier) -> None:
        token = verifier.issue("kim@example.com", "account")
        assert await verifier.verify(token[:-2] + "xx") is AuthFailure.UNAUTHENTICATED
        foreign = issue_sso_token("other-secret", "kim@example.com", "account")
        assert await verifier.verify(foreign) is AuthFailure.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_missing_token(self, verifier: TokenVerifier) -> None:
        assert await verifier.verify(None) is AuthFailure.UNAUTHENTICATED
        assert await verifier.verify("") is AuthFailure.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_unknown_purpose_rejected(self, verifier: TokenVerifier) -> None:
        from itsdangerous import URLSafeTimedSerializer

        from src.core.constants import SSO_TOKEN_SALT

        serializer = URLSafeTimedSerializer(SECRET, salt=SSO_TOKEN_SALT)
        token = serializer.dumps({"email": "kim@example.com", "purpose": "admin"})
        assert await verifier.verify(token) is AuthFailure.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_store_outage_is_unavailable(self, clock) -> None:
        verifier = TokenVerifier(DownStore(clock=clock), SECRET, clock=clock)
        token = verifier.issue("kim@example.com", "account")
        assert await verifier.verify(token) is AuthFailure.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_dev_bypass_only_when_enabled(self, store: MemoryStore, clock) -> None:
        enabled = TokenVerifier(
            store, SECRET, dev_bypass=True, dev_email="dev@example.com", clock=clock
        )
        outcome = await enabled.verify("dev")
        assert isinstance(outcome, SSOIdentity)
        assert outcome.email == "dev@example.com"

        disabled = TokenVerifier(store, SECRET, clock=clock)
        assert await disabled.verify("dev") is AuthFailure.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_verify_email(self, verifier: TokenVerifier) -> None:
        token = verifier.issue("kim@example.com", "account")
        assert await verifier.verify_email(token) == "kim@example.com"
        assert await verifier.verify_email("garbage") is None

    def test_usage_ttl_covers_grace(self, store: MemoryStore) -> None:
        verifier = TokenVerifier(store, SECRET, max_age_seconds=300, grace_seconds=900)
        assert verifier.usage_ttl_seconds == 900


class TestManagerBillingTokens:
    def test_round_trip(self, clock) -> None:
        tokens = ManagerBillingTokens(SECRET, max_age_seconds=600, clock=clock)
        claim = tokens.verify(tokens.issue("mg_1", "ops"))
        assert not isinstance(claim, AuthFailure)
        assert claim.manager_id == "mg_1"
        assert claim.login_id == "ops"

    def test_expired(self, clock) -> None:
        tokens = ManagerBillingTokens(SECRET, max_age_seconds=600, clock=clock)
        token = tokens.issue("mg_1", "ops")
        clock.advance(seconds=605)
        assert tokens.verify(token) is AuthFailure.UNAUTHENTICATED

    def test_sso_token_is_not_a_billing_token(self, clock) -> None:
        tokens = ManagerBillingTokens(SECRET, clock=clock)
        sso = issue_sso_token(SECRET, "kim@example.com", "account")
        assert tokens.verify(sso) is AuthFailure.UNAUTHENTICATED
