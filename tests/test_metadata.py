from __future__ import annotations

import asyncio

import httpx

from rent_reclaimer.metadata import TokenMetadata, TokenMetadataService, TtlCache

MINT = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_cache_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache: TtlCache[str] = TtlCache(60, clock=clock)
    cache.put("a", "value")

    clock.now += 59
    assert cache.get("a") == "value"
    assert "a" in cache

    clock.now += 1
    assert cache.get("a") is None
    assert len(cache) == 0


def test_cache_uses_injected_store() -> None:
    store: dict = {}
    TtlCache(10, store=store).put("k", 1)

    assert "k" in store


def _service(handler, cache: TtlCache[TokenMetadata] | None = None) -> TokenMetadataService:
    async def async_handler(request: httpx.Request) -> httpx.Response:
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(async_handler))
    return TokenMetadataService(
        cache or TtlCache(),
        client=client,
        token_api="https://tokens.test/v1",
        price_api="https://price.test/v2",
    )


def test_lookup_combines_token_info_and_price_and_caches() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        if request.url.host == "tokens.test":
            return httpx.Response(200, json={"name": "Dust", "symbol": "DST", "logoURI": "https://img", "freeze_authority": None})
        return httpx.Response(200, json={"data": {MINT: {"id": MINT, "price": "0.0042"}}})

    service = _service(handler)
    meta = asyncio.run(service.get(MINT))
    again = asyncio.run(service.get(MINT))

    assert meta.name == "Dust"
    assert meta.symbol == "DST"
    assert meta.price_usd == 0.0042
    assert again is meta
    assert calls == ["tokens.test", "price.test"]


def test_lookup_falls_back_to_placeholder() -> None:
    service = _service(lambda _: httpx.Response(404, json={}))

    meta = asyncio.run(service.get(MINT))

    assert meta.name == f"Token {MINT[:8]}...{MINT[-4:]}"
    assert meta.price_usd is None
