"""Tests for core type definitions."""

from __future__ import annotations

import pytest

from src.core.types import (
    TERMINAL_STATUSES,
    AdminRole,
    ChangeType,
    PermissionLevel,
    SessionType,
    SubscriptionStatus,
)


class TestPermissionLevel:
    @pytest.mark.parametrize(
        ("granted", "required", "expected"),
        [
            (PermissionLevel.WRITE, PermissionLevel.READ, True),
            (PermissionLevel.READ, PermissionLevel.READ, True),
            (PermissionLevel.READ, PermissionLevel.WRITE, False),
            (PermissionLevel.HIDDEN, PermissionLevel.READ, False),
        ],
    )
    def test_allows_is_ordered(
        self, granted: PermissionLevel, required: PermissionLevel, expected: bool
    ) -> None:
        assert granted.allows(required) is expected

    def test_from_string(self) -> None:
        assert PermissionLevel("write") is PermissionLevel.WRITE


class TestSubscriptionStatus:
    def test_terminal_states_are_not_live(self) -> None:
        for status in TERMINAL_STATUSES:
            assert not status.is_live

    def test_suspended_is_still_live(self) -> None:
        assert SubscriptionStatus.SUSPENDED.is_live
        assert SubscriptionStatus.PAST_DUE.is_live
        assert SubscriptionStatus.PENDING_CANCEL.is_live

    def test_string_values(self) -> None:
        assert SubscriptionStatus.PAST_DUE.value == "past_due"
        assert ChangeType.RESERVE_CANCELED.value == "reserve_canceled"


class TestRolesAndSessions:
    def test_four_session_kinds(self) -> None:
        assert {s.value for s in SessionType} == {"auth", "checkout", "admin", "manager"}

    def test_owner_is_a_role(self) -> None:
        assert AdminRole("owner") is AdminRole.OWNER
