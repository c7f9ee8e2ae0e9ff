"""Spot, historical and OHLC prices from the CoinGecko API."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

import requests
from cachetools import LRUCache, TTLCache

BASE_URL = "https://api.coingecko.com/api/v3"
VS_CURRENCY = "usd"
PRECISION = "18"
DAY_FORMAT = "%d-%m-%Y"
SPOT_TTL = 10.0
_HTTP_TIMEOUT = 30.0


class PriceError(Exception):
    """Raised when a price cannot be obtained."""


@dataclass(frozen=True)
class OHLC:
    time: datetime
    open: float
    high: float
    low: float
    close: float


def _utc_day(t: datetime) -> str:
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    return t.astimezone(timezone.utc).strftime(DAY_FORMAT)


class CoinGeckoPrices:
    """Price client with a short-lived spot cache and a historical cache."""

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self._session = session or requests.Session()
        self._historical_cache: LRUCache = LRUCache(maxsize=4096)
        self._spot_cache: TTLCache = TTLCache(maxsize=4096, ttl=SPOT_TTL)

    def _get_json(self, path: str, params: Mapping[str, str]) -> Any:
        try:
            response = self._session.get(
                BASE_URL + path, params=params, timeout=_HTTP_TIMEOUT
            )
        except requests.RequestException as err:
            raise PriceError(f"failed to http get: {err}") from err
        if response.status_code != 200:
            raise PriceError(
                f"invalid response code {response.status_code} {response.reason}"
            )
        try:
            return response.json()
        except ValueError as err:
            raise PriceError(f"failed to unmarshal json: {err}") from err

    def spot(self, coin_id: str) -> float:
        """Return the current USD price of ``coin_id``."""
        cached = self._spot_cache.get(coin_id)
        if cached is not None:
            return cached
        data = self._get_json(
            "/simple/price",
            {"ids": coin_id, "precision": PRECISION, "vs_currencies": VS_CURRENCY},
        )
        prices = data.get(coin_id) if isinstance(data, dict) else None
        if not isinstance(prices, dict):
            raise PriceError("missing id in response")
        if VS_CURRENCY not in prices:
            raise PriceError("missing vs price in response")
        price = float(prices[VS_CURRENCY])
        self._spot_cache[coin_id] = price
        return price

    def historical(self, coin_id: str, t: datetime) -> float:
        """Return the USD price of ``coin_id`` on the UTC day of ``t``, 0 if unknown."""
        day = _utc_day(t)
        if day == _utc_day(datetime.now(timezone.utc)):
            return self.spot(coin_id)
        cache_key = f"{coin_id}-{day}"
        cached = self._historical_cache.get(cache_key)
        if cached is not None:
            return cached
        data = self._get_json(
            f"/coins/{coin_id}/history", {"date": day, "localization": "false"}
        )
        market_data = (data or {}).get("market_data") or {}
        current = market_data.get("current_price") or {}
        price = float(current.get(VS_CURRENCY, 0.0))
        self._historical_cache[cache_key] = price
        return price

    def ohlc(self, coin_id: str, days: int) -> List[OHLC]:
        """Return open/high/low/close candles over the last ``days`` days."""
        data = self._get_json(
            f"/coins/{coin_id}/ohlc", {"vs_currency": VS_CURRENCY, "days": str(days)}
        )
        candles = []
        for raw in data:
            if len(raw) != 5:
                raise PriceError("invalid response shape")
            candles.append(
                OHLC(
                    time=datetime.fromtimestamp(int(raw[0]) / 1000, tz=timezone.utc),
                    open=float(raw[1]),
                    high=float(raw[2]),
                    low=float(raw[3]),
                    close=float(raw[4]),
                )
            )
        return candles