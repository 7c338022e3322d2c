"""
Exchange gateway. One capability interface, one adapter per exchange.

Market data adapters satisfy MarketDataClient and are selected by exchange
name at startup. Order placement goes through a single OrderClient (live
ccxt or the paper fill engine), so the executor never sees which mode it runs in.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """A gateway call to one exchange failed. Carries the exchange and the underlying cause."""

    def __init__(self, exchange: str, cause: object) -> None:
        self.exchange = exchange
        self.cause = cause
        super().__init__(f"{exchange}: {cause}")


class GatewayTimeout(GatewayError):
    """A gateway call exceeded its timeout."""
    pass


class OrderTimeout(GatewayTimeout):
    """Order placement timed out; the order may or may not exist on the exchange."""

    def __init__(self, exchange: str, client_order_id: str, cause: object = "timed out") -> None:
        self.client_order_id = client_order_id
        super().__init__(exchange, cause)


@dataclass(frozen=True)
class TickerFunding:
    """One symbol's row from an exchange batch call. symbol is the canonical base asset."""
    symbol: str
    mark_price: float
    funding_rate: float
    funding_interval_hours: float | None = None  # None = use the allocation table
    next_funding_time: float | None = None  # epoch seconds
    open_interest: float = 0.0  # quote notional (USD)
    volume_24h: float = 0.0  # quote notional (USD)
    bid_price: float = 0.0
    ask_price: float = 0.0


@dataclass(frozen=True)
class OrderResult:
    """Outcome of a placement or status query."""
    filled: bool
    fill_price: float
    order_id: str
    client_order_id: str = ""
    filled_size: float = 0.0
    fee_usd: float = 0.0
    status: str = ""


@runtime_checkable
class MarketDataClient(Protocol):
    """Batched public market data for one exchange."""

    @property
    def exchange_name(self) -> str:
        ...

    def fetch_batch(self) -> list[TickerFunding]:
        """All perpetual tickers with funding in one call (or one fixed set of calls)."""
        ...


@runtime_checkable
class OrderClient(Protocol):
    """Order placement and status queries across exchanges."""

    def place_order(
        self,
        exchange: str,
        symbol: str,
        side: str,
        size: float,
        client_order_id: str,
        reduce_only: bool = False,
    ) -> OrderResult:
        ...

    def get_order_status(self, exchange: str, symbol: str, client_order_id: str) -> OrderResult:
        ...


def validate_batch(exchange: str, rows: object) -> list[TickerFunding]:
    """Reject malformed batches. Raises GatewayError."""
    if not isinstance(rows, list):
        raise GatewayError(exchange, f"malformed batch: expected list, got {type(rows).__name__}")
    if not rows:
        raise GatewayError(exchange, "malformed batch: no rows")
    valid: list[TickerFunding] = []
    for row in rows:
        if not isinstance(row, TickerFunding):
            raise GatewayError(exchange, f"malformed batch row: {row!r}")
        if not math.isfinite(row.funding_rate) or not math.isfinite(row.mark_price) or row.mark_price <= 0:
            logger.debug("%s: dropping row with bad numbers: %s", exchange, row.symbol)
            continue
        valid.append(row)
    if not valid:
        raise GatewayError(exchange, "malformed batch: no usable rows")
    return valid


class ExchangeGateway:
    """
    Registry of market data adapters plus the active order client.

    Every failure surfaces as GatewayError(exchange, cause) so callers can
    isolate it to one exchange.
    """

    def __init__(
        self,
        market_clients: dict[str, MarketDataClient],
        order_client: OrderClient | None = None,
    ) -> None:
        self._market_clients = dict(market_clients)
        self._order_client = order_client

    @property
    def exchanges(self) -> list[str]:
        return sorted(self._market_clients)

    def supports(self, exchange: str) -> bool:
        return exchange in self._market_clients

    def fetch_batch(self, exchange: str) -> list[TickerFunding]:
        client = self._market_clients.get(exchange)
        if client is None:
            raise GatewayError(exchange, "no market data adapter configured")
        try:
            rows = client.fetch_batch()
        except GatewayError:
            raise
        except httpx.TimeoutException as e:
            raise GatewayTimeout(exchange, e) from e
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise GatewayError(exchange, e) from e
        return validate_batch(exchange, rows)

    def _orders(self) -> OrderClient:
        if self._order_client is None:
            raise RuntimeError("No order client configured")
        return self._order_client

    def place_order(
        self, exchange: str, symbol: str, side: str, size: float, client_order_id: str,
    ) -> OrderResult:
        return self._orders().place_order(exchange, symbol, side, size, client_order_id)

    def close_order(
        self, exchange: str, symbol: str, position_side: str, size: float, client_order_id: str,
    ) -> OrderResult:
        """Reduce-only order on the opposite side of an open leg."""
        side = "sell" if position_side == "buy" else "buy"
        return self._orders().place_order(
            exchange, symbol, side, size, client_order_id, reduce_only=True,
        )

    def get_order_status(self, exchange: str, symbol: str, client_order_id: str) -> OrderResult:
        return self._orders().get_order_status(exchange, symbol, client_order_id)
