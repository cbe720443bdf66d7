"""Tests for gateway status mapping and transition decisions."""

import pytest

from app.engine.state_machine import decide_transition, map_gateway_status
from app.models.enums import PaymentStatus, TransitionOutcome


class TestStatusMapping:
    @pytest.mark.parametrize(
        "keyword, expected",
        [
            ("COMPLETED", PaymentStatus.COMPLETED),
            ("FAILED", PaymentStatus.FAILED),
            ("INVALID", PaymentStatus.FAILED),
            ("CANCELLED", PaymentStatus.CANCELED),
            ("PENDING", PaymentStatus.PENDING),
            ("SOMETHING_NEW", PaymentStatus.PENDING),
        ],
    )
    def test_keywords(self, keyword, expected):
        assert map_gateway_status(keyword) == expected

    def test_case_insensitive(self):
        assert map_gateway_status("Completed") == PaymentStatus.COMPLETED
        assert map_gateway_status(" cancelled ") == PaymentStatus.CANCELED

    def test_reversed_is_not_terminal(self):
        assert map_gateway_status("REVERSED") == PaymentStatus.PENDING

    def test_missing_is_pending(self):
        assert map_gateway_status(None) == PaymentStatus.PENDING
        assert map_gateway_status("") == PaymentStatus.PENDING


class TestDecideTransition:
    def test_pending_to_terminal_applies(self):
        for terminal in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELED):
            assert decide_transition(PaymentStatus.PENDING, terminal) == TransitionOutcome.APPLIED

    def test_same_status_is_duplicate(self):
        for status in PaymentStatus:
            assert decide_transition(status, status) == TransitionOutcome.DUPLICATE

    def test_pending_after_terminal_is_ignored(self):
        assert decide_transition(PaymentStatus.COMPLETED, PaymentStatus.PENDING) == TransitionOutcome.IGNORED
        assert decide_transition(PaymentStatus.CANCELED, PaymentStatus.PENDING) == TransitionOutcome.IGNORED

    def test_different_terminal_is_conflict(self):
        assert decide_transition(PaymentStatus.COMPLETED, PaymentStatus.CANCELED) == TransitionOutcome.CONFLICT
        assert decide_transition(PaymentStatus.FAILED, PaymentStatus.COMPLETED) == TransitionOutcome.CONFLICT
        assert decide_transition(PaymentStatus.CANCELED, PaymentStatus.FAILED) == TransitionOutcome.CONFLICT

    def test_accepts_raw_strings(self):
        assert decide_transition("pending", "completed") == TransitionOutcome.APPLIED
