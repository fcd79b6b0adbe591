"""Token descriptor lookup with an explicit, caller-owned TTL cache."""

from __future__ import annotations

import time
from dataclasses import dataclass
from logging import getLogger
from typing import Callable, Generic, MutableMapping, Tuple, TypeVar

import httpx

log = getLogger(__name__)

DEFAULT_TOKEN_API = "https://lite-api.jup.ag/tokens/v1"
DEFAULT_PRICE_API = "https://api.jup.ag/price/v2"
DEFAULT_TTL_SECONDS = 300.0

V = TypeVar("V")


class TtlCache(Generic[V]):
    """Mapping-backed cache whose entries expire ``ttl_seconds`` after insertion.

    The backing store is injectable so callers can share one across sessions
    or swap in something persistent; the clock is injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        store: MutableMapping[str, Tuple[float, V]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._store: MutableMapping[str, Tuple[float, V]] = store if store is not None else {}
        self._clock = clock

    def get(self, key: str) -> V | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return None
        return value

    def put(self, key: str, value: V) -> None:
        self._store[key] = (self._clock() + self.ttl_seconds, value)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._store)


@dataclass(slots=True, frozen=True)
class TokenMetadata:
    mint: str
    name: str
    symbol: str
    image: str = ""
    price_usd: float | None = None
    freeze_authority: str | None = None

    @classmethod
    def placeholder(cls, mint: str) -> TokenMetadata:
        return cls(mint=mint, name=f"Token {mint[:8]}...{mint[-4:]}", symbol=mint[:4].upper())


class TokenMetadataService:
    """Looks up name/symbol/freeze authority and a USD price for a mint."""

    def __init__(
        self,
        cache: TtlCache[TokenMetadata],
        *,
        client: httpx.AsyncClient | None = None,
        token_api: str = DEFAULT_TOKEN_API,
        price_api: str = DEFAULT_PRICE_API,
    ) -> None:
        self.cache = cache
        self.token_api = token_api.rstrip("/")
        self.price_api = price_api
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=15.0)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch_price(self, mint: str) -> float | None:
        try:
            resp = await self._client.get(self.price_api, params={"ids": mint})
            if resp.status_code >= 400:
                return None
            entry = (resp.json().get("data") or {}).get(mint)
            if entry and entry.get("price") is not None:
                return float(entry["price"])
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            log.warning("price lookup failed for %s: %s", mint, exc)
        return None

    async def get(self, mint: str) -> TokenMetadata:
        cached = self.cache.get(mint)
        if cached is not None:
            return cached

        meta = TokenMetadata.placeholder(mint)
        try:
            resp = await self._client.get(f"{self.token_api}/token/{mint}")
            if resp.status_code < 400:
                info = resp.json() or {}
                meta = TokenMetadata(
                    mint=mint,
                    name=info.get("name") or meta.name,
                    symbol=info.get("symbol") or meta.symbol,
                    image=info.get("logoURI") or "",
                    freeze_authority=info.get("freeze_authority"),
                )
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            log.warning("token info lookup failed for %s: %s", mint, exc)

        price = await self._fetch_price(mint)
        if price is not None:
            meta = TokenMetadata(
                mint=meta.mint,
                name=meta.name,
                symbol=meta.symbol,
                image=meta.image,
                price_usd=price,
                freeze_authority=meta.freeze_authority,
            )
        self.cache.put(mint, meta)
        return meta
