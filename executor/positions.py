"""
Hedge position lifecycle.

State flow (per symbol + long exchange + short exchange):
- PENDING: entry orders in flight
- OPEN: both legs filled, collecting funding
- CLOSING: exit orders in flight
- CLOSED: both legs closed, realized PnL booked (terminal)
- FAILED: unrecoverable order error while PENDING or CLOSING (terminal)

"idle" is the absence of a non-terminal position for the key.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class HedgeStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class InvalidTransition(ValueError):
    """Raised on a transition the lifecycle does not allow."""
    pass


_VALID_TRANSITIONS: dict[HedgeStatus, set[HedgeStatus]] = {
    HedgeStatus.PENDING: {HedgeStatus.OPEN, HedgeStatus.FAILED},
    HedgeStatus.OPEN: {HedgeStatus.CLOSING},
    HedgeStatus.CLOSING: {HedgeStatus.CLOSED, HedgeStatus.FAILED},
    HedgeStatus.CLOSED: set(),  # Terminal
    HedgeStatus.FAILED: set(),  # Terminal
}

ACTIVE_STATUSES = frozenset({HedgeStatus.PENDING, HedgeStatus.OPEN, HedgeStatus.CLOSING})


def can_transition_to(from_status: HedgeStatus, to_status: HedgeStatus) -> bool:
    return to_status in _VALID_TRANSITIONS.get(from_status, set())


def is_terminal(status: HedgeStatus) -> bool:
    return not _VALID_TRANSITIONS[status]


@dataclass
class HedgePosition:
    id: str
    symbol: str
    long_exchange: str
    short_exchange: str
    status: HedgeStatus
    mode: str
    risk_tier: str
    size_eur: float
    created_at: float
    updated_at: float
    long_size: float = 0.0
    short_size: float = 0.0
    entry_long_price: float | None = None
    entry_short_price: float | None = None
    exit_long_price: float | None = None
    exit_short_price: float | None = None
    entry_spread_bps: float = 0.0
    entry_net_edge_bps: float = 0.0
    funding_collected_eur: float = 0.0
    fees_eur: float = 0.0
    realized_pnl: float | None = None
    long_order_id: str = ""
    short_order_id: str = ""
    close_reason: str = ""
    error: str = ""
    last_funding_at: float | None = None
    opened_at: float | None = None
    closed_at: float | None = None
    close_requested: bool = False

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.symbol, self.long_exchange, self.short_exchange)

    @property
    def label(self) -> str:
        return f"{self.symbol} L:{self.long_exchange} S:{self.short_exchange}"

    def transition_to(self, to_status: HedgeStatus) -> None:
        if not can_transition_to(self.status, to_status):
            raise InvalidTransition(
                f"Invalid position transition for {self.id}: {self.status.value} -> {to_status.value}"
            )
        logger.debug("Position %s: %s -> %s", self.id, self.status.value, to_status.value)
        self.status = to_status

    def to_row(self) -> dict:
        row = asdict(self)
        row["status"] = self.status.value
        row["close_requested"] = int(self.close_requested)
        return row

    @classmethod
    def from_row(cls, row: dict) -> HedgePosition:
        data = dict(row)
        data["status"] = HedgeStatus(data["status"])
        data["close_requested"] = bool(data.get("close_requested", 0))
        return cls(**data)
