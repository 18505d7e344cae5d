#!/usr/bin/env python3
"""
Token price data from the Shade GraphQL API, cached for a short TTL.
The cache is an ordinary object handed to whoever needs prices.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

TOKENS_QUERY = """
query getTokens {
    tokens {
        id
        name
        symbol
        description
        PriceToken {
            priceId
        }
    }
}
"""

PRICES_QUERY = """
query getPrices($ids: [String!]) {
    prices(query: {ids: $ids}) {
        id
        value
    }
}
"""


class PriceFetchError(Exception):
    """The price API could not be reached or answered nonsense."""


@dataclass(frozen=True)
class TokenPrice:
    id: str
    name: str
    symbol: str
    description: str
    price: float


def merge_prices(tokens: List[dict], prices: List[dict]) -> List[TokenPrice]:
    """Attach prices to tokens, dropping LP tokens and tokens without a price."""
    price_map = {p.get("id"): p.get("value") for p in prices}
    merged = []
    for token in tokens:
        name = token.get("name") or ""
        if name.endswith("LP") or "Liquidity Provider" in name:
            continue
        price_tokens = token.get("PriceToken") or []
        if not price_tokens:
            continue
        value = price_map.get(price_tokens[0].get("priceId"))
        if value is None:
            continue
        merged.append(TokenPrice(
            id=token.get("id", ""),
            name=name,
            symbol=token.get("symbol", ""),
            description=token.get("description") or "",
            price=float(value),
        ))
    merged.sort(key=lambda t: t.name.lower())
    return merged


class ShadePriceSource:
    def __init__(self, api_url: str, timeout: float = 15.0):
        self.api_url = api_url
        self.timeout = timeout

    def _post(self, operation: str, query: str, variables: Dict) -> Dict:
        payload = {"operationName": operation, "variables": variables, "query": query}
        try:
            response = requests.post(self.api_url, json=payload,
                                     headers={"Content-Type": "application/json"},
                                     timeout=self.timeout)
            response.raise_for_status()
            return response.json()["data"]
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            raise PriceFetchError(f"{operation} failed: {e}") from e

    def fetch_sync(self) -> List[TokenPrice]:
        tokens = self._post("getTokens", TOKENS_QUERY, {})["tokens"]
        prices = self._post("getPrices", PRICES_QUERY, {"ids": []})["prices"]
        return merge_prices(tokens, prices)

    async def fetch(self) -> List[TokenPrice]:
        return await asyncio.to_thread(self.fetch_sync)


class PriceCache:
    """Holds the last fetched price list together with when it was fetched."""

    def __init__(self, fetch: Callable[[], Awaitable[List[TokenPrice]]], ttl: float = 300.0,
                 clock: Callable[[], float] = time.monotonic):
        self._fetch = fetch
        self.ttl = ttl
        self.clock = clock
        self.value: List[TokenPrice] = []
        self.fetched_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def needs_update(self) -> bool:
        if self.fetched_at is None or not self.value:
            return True
        return self.clock() - self.fetched_at > self.ttl

    async def get(self) -> List[TokenPrice]:
        async with self._lock:
            if self.needs_update():
                logger.debug("Fetching and caching price data...")
                self.value = await self._fetch()
                self.fetched_at = self.clock()
            return list(self.value)

    async def search(self, name: str) -> List[TokenPrice]:
        needle = name.strip().lower()
        return [t for t in await self.get() if needle in t.name.lower()]

    async def ratios(self) -> Tuple[float, float]:
        """SHD priced in SCRT and in stkd-SCRT."""
        by_symbol = {t.symbol: t.price for t in await self.get()}
        try:
            shd, scrt, stkd_scrt = by_symbol["SHD"], by_symbol["SCRT"], by_symbol["stkd-SCRT"]
        except KeyError as e:
            raise PriceFetchError(f"{e.args[0]} not found") from e
        return shd / scrt, shd / stkd_scrt
