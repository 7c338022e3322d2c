"""
Batched public market data adapters. Pure REST over httpx, no SDK dependency.

Each adapter returns every USDT-margined perpetual in one fixed set of calls,
so rate limit usage does not grow with the number of tracked symbols.
Symbols are canonicalized to the base asset ("BTCUSDT", "BTC-USDT-SWAP", "XBTUSDTM" -> "BTC").
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor

import httpx

from client.gateway import MarketDataClient, TickerFunding
from config import Config

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def _float(value: object, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _ms_to_sec(value: object) -> float | None:
    if value in (None, "", 0, "0"):
        return None
    return int(value) / 1000.0


class _RestClient:
    """Shared httpx plumbing. Raises on non-200."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _get(self, path: str, params: dict | None = None) -> dict | list:
        resp = httpx.get(f"{self._base_url}{path}", params=params, timeout=self._timeout)
        resp.raise_for_status()
        return resp.json()

    def _post(self, path: str, payload: dict) -> dict | list:
        resp = httpx.post(f"{self._base_url}{path}", json=payload, timeout=self._timeout)
        resp.raise_for_status()
        return resp.json()

    def _get_all(self, *requests: tuple[str, dict | None]) -> list[dict | list]:
        """Independent GETs in parallel, results in request order. The set takes as long as its slowest call."""
        with ThreadPoolExecutor(max_workers=len(requests)) as pool:
            futures = [pool.submit(self._get, path, params) for path, params in requests]
            return [f.result() for f in futures]


class BinanceClient(_RestClient):
    """USDT-M futures: premiumIndex (funding + mark), 24h ticker (volume), bookTicker (bid/ask)."""

    exchange_name = "binance"

    def __init__(self, base_url: str = "https://fapi.binance.com", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        premium, tickers_raw, books_raw = self._get_all(
            ("/fapi/v1/premiumIndex", None),
            ("/fapi/v1/ticker/24hr", None),
            ("/fapi/v1/ticker/bookTicker", None),
        )
        tickers = {t["symbol"]: t for t in tickers_raw}
        books = {b["symbol"]: b for b in books_raw}

        rows: list[TickerFunding] = []
        for item in premium:
            raw = item["symbol"]
            if not raw.endswith("USDT"):
                continue
            ticker = tickers.get(raw, {})
            book = books.get(raw, {})
            rows.append(TickerFunding(
                symbol=raw[: -len("USDT")],
                mark_price=_float(item.get("markPrice")),
                funding_rate=_float(item.get("lastFundingRate")),
                next_funding_time=_ms_to_sec(item.get("nextFundingTime")),
                volume_24h=_float(ticker.get("quoteVolume")),
                bid_price=_float(book.get("bidPrice")),
                ask_price=_float(book.get("askPrice")),
            ))
        return rows


class BybitClient(_RestClient):
    """v5 linear tickers: funding, mark, turnover and top of book in one call."""

    exchange_name = "bybit"

    def __init__(self, base_url: str = "https://api.bybit.com", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        data = self._get("/v5/market/tickers", {"category": "linear"})
        if data.get("retCode", 0) != 0:
            raise ValueError(f"bybit retCode {data.get('retCode')}: {data.get('retMsg')}")

        rows: list[TickerFunding] = []
        for item in data["result"]["list"]:
            raw = item["symbol"]
            if not raw.endswith("USDT") or not item.get("fundingRate"):
                continue
            mark = _float(item.get("markPrice") or item.get("lastPrice"))
            oi_value = item.get("openInterestValue")
            open_interest = _float(oi_value) if oi_value else _float(item.get("openInterest")) * mark
            interval = item.get("fundingIntervalHour")
            rows.append(TickerFunding(
                symbol=raw[: -len("USDT")],
                mark_price=mark,
                funding_rate=_float(item.get("fundingRate")),
                funding_interval_hours=_float(interval) if interval else None,
                next_funding_time=_ms_to_sec(item.get("nextFundingTime")),
                open_interest=open_interest,
                volume_24h=_float(item.get("turnover24h")),
                bid_price=_float(item.get("bid1Price")),
                ask_price=_float(item.get("ask1Price")),
            ))
        return rows


class OkxClient(_RestClient):
    """v5 SWAP tickers joined with the all-instrument funding rate call. Rows without funding are skipped."""

    exchange_name = "okx"

    def __init__(self, base_url: str = "https://www.okx.com", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        tickers, funding = self._get_all(
            ("/api/v5/market/tickers", {"instType": "SWAP"}),
            ("/api/v5/public/funding-rate", {"instId": "ANY"}),
        )
        funding_by_inst = {f["instId"]: f for f in funding.get("data", [])}

        rows: list[TickerFunding] = []
        for item in tickers["data"]:
            inst = item["instId"]
            if "-USDT-" not in inst:
                continue
            fund = funding_by_inst.get(inst) or item
            if not fund.get("fundingRate"):
                continue
            last = _float(item.get("last"))
            rows.append(TickerFunding(
                symbol=inst.split("-")[0],
                mark_price=last,
                funding_rate=_float(fund.get("fundingRate")),
                next_funding_time=_ms_to_sec(fund.get("fundingTime") or fund.get("nextFundingTime")),
                # volCcy24h is in base currency for swaps
                volume_24h=_float(item.get("volCcy24h")) * last,
                bid_price=_float(item.get("bidPx")),
                ask_price=_float(item.get("askPx")),
            ))
        return rows


class HyperliquidClient(_RestClient):
    """metaAndAssetCtxs: every perp's context in one POST. Funding is hourly."""

    exchange_name = "hyperliquid"

    def __init__(self, base_url: str = "https://api.hyperliquid.xyz", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        meta, ctxs = self._post("/info", {"type": "metaAndAssetCtxs"})
        universe = meta["universe"]
        if len(universe) != len(ctxs):
            raise ValueError(f"hyperliquid universe/ctx length mismatch: {len(universe)} != {len(ctxs)}")

        next_hour = (math.floor(time.time() / 3600) + 1) * 3600.0
        rows: list[TickerFunding] = []
        for asset, ctx in zip(universe, ctxs):
            if asset.get("isDelisted"):
                continue
            mark = _float(ctx.get("markPx"))
            impact = ctx.get("impactPxs") or []
            rows.append(TickerFunding(
                symbol=asset["name"],
                mark_price=mark,
                funding_rate=_float(ctx.get("funding")),
                funding_interval_hours=1.0,
                next_funding_time=next_hour,
                open_interest=_float(ctx.get("openInterest")) * mark,
                volume_24h=_float(ctx.get("dayNtlVlm")),
                bid_price=_float(impact[0]) if len(impact) == 2 else 0.0,
                ask_price=_float(impact[1]) if len(impact) == 2 else 0.0,
            ))
        return rows


class BitgetClient(_RestClient):
    """v2 USDT-FUTURES tickers: funding, mark, volume and top of book in one call."""

    exchange_name = "bitget"

    def __init__(self, base_url: str = "https://api.bitget.com", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        data = self._get("/api/v2/mix/market/tickers", {"productType": "USDT-FUTURES"})
        if data.get("code", "00000") != "00000":
            raise ValueError(f"bitget code {data.get('code')}: {data.get('msg')}")

        rows: list[TickerFunding] = []
        for item in data["data"]:
            raw = item["symbol"]
            if not raw.endswith("USDT") or not item.get("fundingRate"):
                continue
            mark = _float(item.get("markPrice") or item.get("lastPr"))
            rows.append(TickerFunding(
                symbol=raw[: -len("USDT")],
                mark_price=mark,
                funding_rate=_float(item.get("fundingRate")),
                next_funding_time=_ms_to_sec(item.get("nextFundingTime")),
                # holdingAmount is in base currency
                open_interest=_float(item.get("holdingAmount")) * mark,
                volume_24h=_float(item.get("usdtVolume") or item.get("quoteVolume")),
                bid_price=_float(item.get("bidPr")),
                ask_price=_float(item.get("askPr")),
            ))
        return rows


class GateClient(_RestClient):
    """v4 USDT futures tickers. Contracts are quoted as BTC_USDT."""

    exchange_name = "gate"

    def __init__(self, base_url: str = "https://api.gateio.ws", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        rows: list[TickerFunding] = []
        for item in self._get("/api/v4/futures/usdt/tickers"):
            contract = item["contract"]
            if not contract.endswith("_USDT") or not item.get("funding_rate"):
                continue
            rows.append(TickerFunding(
                symbol=contract[: -len("_USDT")],
                mark_price=_float(item.get("mark_price") or item.get("last")),
                funding_rate=_float(item.get("funding_rate")),
                volume_24h=_float(item.get("volume_24h_quote") or item.get("volume_24h_settle")),
                bid_price=_float(item.get("highest_bid")),
                ask_price=_float(item.get("lowest_ask")),
            ))
        return rows


def _kucoin_symbol(raw: str) -> str:
    base = raw[: -len("USDTM")]
    return "BTC" if base == "XBT" else base


class KucoinClient(_RestClient):
    """
    Futures active contracts (funding, mark, interval) joined with allTickers
    (top of book). Contracts are quoted as XBTUSDTM; XBT is canonicalized to BTC.
    """

    exchange_name = "kucoin"

    def __init__(self, base_url: str = "https://api-futures.kucoin.com", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        contracts, tickers = self._get_all(
            ("/api/v1/contracts/active", None),
            ("/api/v1/allTickers", None),
        )
        books = {t["symbol"]: t for t in tickers.get("data") or []}

        now = time.time()
        rows: list[TickerFunding] = []
        for item in contracts["data"]:
            raw = item["symbol"]
            if not raw.endswith("USDTM") or item.get("fundingFeeRate") is None:
                continue
            mark = _float(item.get("markPrice"))
            book = books.get(raw, {})
            granularity = item.get("fundingRateGranularity")
            # nextFundingRateTime is milliseconds until the next settlement
            countdown = item.get("nextFundingRateTime")
            rows.append(TickerFunding(
                symbol=_kucoin_symbol(raw),
                mark_price=mark,
                funding_rate=_float(item.get("fundingFeeRate")),
                funding_interval_hours=int(granularity) / 3_600_000 if granularity else None,
                next_funding_time=now + int(countdown) / 1000.0 if countdown else None,
                open_interest=_float(item.get("openInterest")) * _float(item.get("multiplier"), 1.0) * mark,
                volume_24h=_float(item.get("turnoverOf24h")),
                bid_price=_float(book.get("bestBidPrice")),
                ask_price=_float(book.get("bestAskPrice")),
            ))
        return rows


class DeribitClient(_RestClient):
    """
    BTC and ETH perpetuals only, one ticker call each. Funding accrues
    continuously; funding_8h is reported as an 8h rate.
    """

    exchange_name = "deribit"
    instruments = ("BTC-PERPETUAL", "ETH-PERPETUAL")

    def __init__(self, base_url: str = "https://www.deribit.com", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        responses = self._get_all(*[
            ("/api/v2/public/ticker", {"instrument_name": name}) for name in self.instruments
        ])
        rows: list[TickerFunding] = []
        for name, data in zip(self.instruments, responses):
            item = data.get("result")
            if not item:
                raise ValueError(f"deribit {name}: {data.get('error')}")
            rows.append(TickerFunding(
                symbol=name.split("-")[0],
                mark_price=_float(item.get("mark_price") or item.get("last_price")),
                funding_rate=_float(item.get("funding_8h")),
                funding_interval_hours=8.0,
                # open_interest is in USD for perpetuals
                open_interest=_float(item.get("open_interest")),
                volume_24h=_float((item.get("stats") or {}).get("volume_usd")),
                bid_price=_float(item.get("best_bid_price")),
                ask_price=_float(item.get("best_ask_price")),
            ))
        return rows


class MexcClient(_RestClient):
    """Contract ticker: every perpetual in one call. Contracts are quoted as BTC_USDT."""

    exchange_name = "mexc"

    def __init__(self, base_url: str = "https://contract.mexc.com", timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(base_url, timeout)

    def fetch_batch(self) -> list[TickerFunding]:
        data = self._get("/api/v1/contract/ticker")
        if not data.get("success", True):
            raise ValueError(f"mexc code {data.get('code')}: {data.get('message')}")

        rows: list[TickerFunding] = []
        for item in data["data"]:
            raw = item["symbol"]
            if not raw.endswith("_USDT") or item.get("fundingRate") is None:
                continue
            rows.append(TickerFunding(
                symbol=raw[: -len("_USDT")],
                mark_price=_float(item.get("fairPrice") or item.get("lastPrice")),
                funding_rate=_float(item.get("fundingRate")),
                next_funding_time=_ms_to_sec(item.get("nextSettleTime")),
                volume_24h=_float(item.get("amount24")),
                bid_price=_float(item.get("bid1")),
                ask_price=_float(item.get("ask1")),
            ))
        return rows


MARKET_DATA_ADAPTERS: dict[str, type] = {
    "binance": BinanceClient,
    "bybit": BybitClient,
    "okx": OkxClient,
    "hyperliquid": HyperliquidClient,
    "bitget": BitgetClient,
    "gate": GateClient,
    "kucoin": KucoinClient,
    "deribit": DeribitClient,
    "mexc": MexcClient,
}


def build_market_clients(cfg: Config) -> dict[str, MarketDataClient]:
    """One adapter per configured exchange. Exchanges without an adapter are logged and skipped."""
    clients: dict[str, MarketDataClient] = {}
    for ex in cfg.exchanges:
        adapter = MARKET_DATA_ADAPTERS.get(ex.name)
        if adapter is None:
            logger.warning("No market data adapter for %s, not polled", ex.name)
            continue
        clients[ex.name] = adapter(timeout=cfg.fetch_timeout_sec)
    if not clients:
        logger.warning("No exchange has a market data adapter")
    return clients
