"""
Unit tests for executor/positions.py -- hedge lifecycle transitions.
"""

import pytest

from executor.positions import (
    ACTIVE_STATUSES,
    HedgePosition,
    HedgeStatus,
    InvalidTransition,
    can_transition_to,
    is_terminal,
)


def _make_position(status: HedgeStatus = HedgeStatus.PENDING) -> HedgePosition:
    return HedgePosition(
        id="p1", symbol="BTC", long_exchange="binance", short_exchange="bybit",
        status=status, mode="paper", risk_tier="safe", size_eur=50.0,
        created_at=1.0, updated_at=1.0,
    )


class TestTransitions:
    @pytest.mark.parametrize("from_status,to_status", [
        (HedgeStatus.PENDING, HedgeStatus.OPEN),
        (HedgeStatus.PENDING, HedgeStatus.FAILED),
        (HedgeStatus.OPEN, HedgeStatus.CLOSING),
        (HedgeStatus.CLOSING, HedgeStatus.CLOSED),
        (HedgeStatus.CLOSING, HedgeStatus.FAILED),
    ])
    def test_allowed(self, from_status, to_status):
        assert can_transition_to(from_status, to_status)
        pos = _make_position(from_status)
        pos.transition_to(to_status)
        assert pos.status == to_status

    @pytest.mark.parametrize("from_status,to_status", [
        (HedgeStatus.PENDING, HedgeStatus.CLOSED),
        (HedgeStatus.OPEN, HedgeStatus.CLOSED),
        (HedgeStatus.OPEN, HedgeStatus.PENDING),
        (HedgeStatus.CLOSED, HedgeStatus.OPEN),
        (HedgeStatus.FAILED, HedgeStatus.PENDING),
    ])
    def test_rejected(self, from_status, to_status):
        pos = _make_position(from_status)
        with pytest.raises(InvalidTransition):
            pos.transition_to(to_status)
        assert pos.status == from_status

    def test_terminal(self):
        assert is_terminal(HedgeStatus.CLOSED)
        assert is_terminal(HedgeStatus.FAILED)
        assert not is_terminal(HedgeStatus.OPEN)
        assert ACTIVE_STATUSES == {HedgeStatus.PENDING, HedgeStatus.OPEN, HedgeStatus.CLOSING}


class TestRows:
    def test_round_trip(self):
        pos = _make_position(HedgeStatus.OPEN)
        pos.close_requested = True
        pos.entry_long_price = 60_000.0
        row = pos.to_row()
        assert row["status"] == "open"
        assert row["close_requested"] == 1
        assert HedgePosition.from_row(row) == pos

    def test_key_and_label(self):
        pos = _make_position()
        assert pos.key == ("BTC", "binance", "bybit")
        assert pos.label == "BTC L:binance S:bybit"
