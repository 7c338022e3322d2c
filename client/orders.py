"""
Order clients. Live orders go through ccxt (sync API); paper orders fill
against the latest recorded mark price with a fixed slippage.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

import ccxt

from client.gateway import GatewayError, OrderResult, OrderTimeout
from config import Config, ExchangeConfig, get_exchange_config

logger = logging.getLogger(__name__)

# (exchange, symbol) -> latest mark price, or None when unknown
PriceSource = Callable[[str, str], "float | None"]


def market_symbol(symbol: str) -> str:
    """Canonical base asset -> ccxt unified linear perpetual symbol."""
    return f"{symbol}/USDT:USDT"


class CcxtOrderClient:
    """Market orders on real exchanges. One ccxt instance per configured exchange, created lazily."""

    def __init__(self, cfg: Config) -> None:
        self._cfg = cfg
        self._clients: dict[str, ccxt.Exchange] = {}
        self._lock = threading.Lock()

    def _client(self, exchange: str) -> ccxt.Exchange:
        with self._lock:
            client = self._clients.get(exchange)
            if client is None:
                ex_cfg = get_exchange_config(self._cfg, exchange)
                if ex_cfg is None:
                    raise GatewayError(exchange, "exchange not configured")
                client = self._build(ex_cfg)
                self._clients[exchange] = client
            return client

    def _build(self, ex_cfg: ExchangeConfig) -> ccxt.Exchange:
        exchange_id = ex_cfg.ccxt_id or ex_cfg.name
        exchange_class = getattr(ccxt, exchange_id, None)
        if exchange_class is None:
            raise GatewayError(ex_cfg.name, f"ccxt has no exchange {exchange_id!r}")
        options = {
            "apiKey": ex_cfg.api_key,
            "secret": ex_cfg.api_secret,
            "enableRateLimit": True,
            "timeout": int(self._cfg.order_timeout_sec * 1000),
            "options": {"defaultType": "swap"},
        }
        if ex_cfg.api_password:
            options["password"] = ex_cfg.api_password
        return exchange_class(options)

    def place_order(
        self,
        exchange: str,
        symbol: str,
        side: str,
        size: float,
        client_order_id: str,
        reduce_only: bool = False,
    ) -> OrderResult:
        client = self._client(exchange)
        params: dict = {"clientOrderId": client_order_id}
        if reduce_only:
            params["reduceOnly"] = True
        try:
            order = client.create_order(market_symbol(symbol), "market", side, size, None, params)
        except ccxt.RequestTimeout as e:
            raise OrderTimeout(exchange, client_order_id, e) from e
        except ccxt.BaseError as e:
            raise GatewayError(exchange, e) from e
        return _to_result(order, client_order_id)

    def get_order_status(self, exchange: str, symbol: str, client_order_id: str) -> OrderResult:
        client = self._client(exchange)
        try:
            order = client.fetch_order(
                client_order_id, market_symbol(symbol), {"clientOrderId": client_order_id},
            )
        except ccxt.OrderNotFound:
            return OrderResult(filled=False, fill_price=0.0, order_id="", client_order_id=client_order_id, status="not_found")
        except ccxt.RequestTimeout as e:
            raise OrderTimeout(exchange, client_order_id, e) from e
        except ccxt.BaseError as e:
            raise GatewayError(exchange, e) from e
        return _to_result(order, client_order_id)


def _to_result(order: dict, client_order_id: str) -> OrderResult:
    filled_size = float(order.get("filled") or 0.0)
    fee = order.get("fee") or {}
    return OrderResult(
        filled=order.get("status") == "closed" and filled_size > 0,
        fill_price=float(order.get("average") or order.get("price") or 0.0),
        order_id=str(order.get("id") or ""),
        client_order_id=client_order_id,
        filled_size=filled_size,
        fee_usd=float(fee.get("cost") or 0.0),
        status=str(order.get("status") or ""),
    )


class PaperOrderClient:
    """
    Simulated fills against live mark prices.

    Buys fill at mark * (1 + slippage), sells at mark * (1 - slippage); the fee
    is the exchange's taker fee on the fill notional. Without a mark price the
    order is rejected.
    """

    def __init__(self, cfg: Config, price_source: PriceSource) -> None:
        self._cfg = cfg
        self._price_source = price_source
        self._orders: dict[str, OrderResult] = {}
        self._lock = threading.Lock()

    def place_order(
        self,
        exchange: str,
        symbol: str,
        side: str,
        size: float,
        client_order_id: str,
        reduce_only: bool = False,
    ) -> OrderResult:
        mark = self._price_source(exchange, symbol)
        if not mark or mark <= 0:
            result = OrderResult(
                filled=False, fill_price=0.0, order_id=f"paper-{client_order_id}",
                client_order_id=client_order_id, status="rejected",
            )
        else:
            slip = self._cfg.paper_slippage_bps / 10_000
            price = mark * (1 + slip) if side == "buy" else mark * (1 - slip)
            ex_cfg = get_exchange_config(self._cfg, exchange)
            taker_bps = ex_cfg.taker_fee_bps if ex_cfg else self._cfg.default_fee_bps / 2
            result = OrderResult(
                filled=True,
                fill_price=price,
                order_id=f"paper-{client_order_id}",
                client_order_id=client_order_id,
                filled_size=size,
                fee_usd=price * size * taker_bps / 10_000,
                status="closed",
            )
        with self._lock:
            self._orders[client_order_id] = result
        logger.debug(
            "[PAPER] %s %s %.6f %s on %s @ %.6f", "close" if reduce_only else "open",
            side, size, symbol, exchange, result.fill_price,
        )
        return result

    def get_order_status(self, exchange: str, symbol: str, client_order_id: str) -> OrderResult:
        with self._lock:
            result = self._orders.get(client_order_id)
        if result is None:
            return OrderResult(filled=False, fill_price=0.0, order_id="", client_order_id=client_order_id, status="not_found")
        return result
