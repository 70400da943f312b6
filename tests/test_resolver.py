"""
Tests for the DNS fallback chain and the in-memory DNS cache.
"""
import asyncio

import httpx
import pytest

from noticewatch.resolver import DnsCache, HostResolver, is_ip_literal


class TickingClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def strategy_returning(value, calls, name):
    async def strategy(hostname):
        calls.append(name)
        if isinstance(value, Exception):
            raise value
        return value
    return strategy


def test_is_ip_literal():
    assert is_ip_literal("203.0.113.5")
    assert is_ip_literal("::1")
    assert not is_ip_literal("www.example.gov.tw")


def test_dns_cache_expires_lazily():
    clock = TickingClock()
    cache = DnsCache(ttl_seconds=300, clock=clock)
    cache.put("host", "203.0.113.5")

    clock.now += 299
    assert cache.get("host") == "203.0.113.5"

    clock.now += 2
    assert len(cache) == 1
    assert cache.get("host") is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_first_success_wins_in_order():
    calls = []
    resolver = HostResolver(strategies=[
        ("first", strategy_returning(OSError("unreachable"), calls, "first")),
        ("second", strategy_returning("203.0.113.7", calls, "second")),
        ("third", strategy_returning("203.0.113.9", calls, "third")),
    ])

    assert await resolver.resolve("www.example.gov.tw") == "203.0.113.7"
    assert calls == ["first", "second"]


@pytest.mark.asyncio
async def test_empty_answer_advances_to_next_strategy():
    calls = []
    resolver = HostResolver(strategies=[
        ("empty", strategy_returning(None, calls, "empty")),
        ("ok", strategy_returning("203.0.113.7", calls, "ok")),
    ])

    assert await resolver.resolve("www.example.gov.tw") == "203.0.113.7"
    assert calls == ["empty", "ok"]


@pytest.mark.asyncio
async def test_slow_strategy_times_out_and_falls_through():
    calls = []

    async def hang(hostname):
        calls.append("hang")
        await asyncio.sleep(10)

    resolver = HostResolver(attempt_timeout=0.05, strategies=[
        ("hang", hang),
        ("ok", strategy_returning("203.0.113.7", calls, "ok")),
    ])

    assert await resolver.resolve("www.example.gov.tw") == "203.0.113.7"
    assert calls == ["hang", "ok"]


@pytest.mark.asyncio
async def test_all_strategies_fail_returns_none():
    calls = []
    resolver = HostResolver(strategies=[
        ("a", strategy_returning(OSError("no route"), calls, "a")),
        ("b", strategy_returning(ValueError("bad answer"), calls, "b")),
    ])

    assert await resolver.resolve("www.example.gov.tw") is None
    assert calls == ["a", "b"]
    assert len(resolver.cache) == 0


@pytest.mark.asyncio
async def test_success_is_cached():
    calls = []
    resolver = HostResolver(strategies=[("ok", strategy_returning("203.0.113.7", calls, "ok"))])

    await resolver.resolve("www.example.gov.tw")
    await resolver.resolve("www.example.gov.tw")
    assert calls == ["ok"]


@pytest.mark.asyncio
async def test_ip_literal_skips_strategies():
    calls = []
    resolver = HostResolver(strategies=[("ok", strategy_returning("203.0.113.7", calls, "ok"))])

    assert await resolver.resolve("198.51.100.1") == "198.51.100.1"
    assert calls == []


def test_default_chain_order():
    names = [name for name, _ in HostResolver().strategies]
    assert names[0].startswith("dns:google")
    assert names[1].startswith("dns:cloudflare")
    assert [n for n in names if n.startswith("doh:")] == ["doh:google", "doh:cloudflare"]
    assert names[-1] == "system"


@pytest.mark.asyncio
async def test_doh_strategy_skips_cname_records():
    def handler(request):
        assert request.url.params["name"] == "www.example.gov.tw"
        assert request.headers["accept"] == "application/dns-json"
        return httpx.Response(200, json={
            "Status": 0,
            "Answer": [
                {"name": "www.example.gov.tw", "type": 5, "data": "edge.example.net."},
                {"name": "edge.example.net", "type": 1, "data": "203.0.113.20"},
            ],
        })

    resolver = HostResolver(transport=httpx.MockTransport(handler))
    strategy = resolver._doh_strategy("https://dns.google/resolve")
    assert await strategy("www.example.gov.tw") == "203.0.113.20"


@pytest.mark.asyncio
async def test_doh_strategy_without_answer_returns_none():
    resolver = HostResolver(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"Status": 3})))
    strategy = resolver._doh_strategy("https://cloudflare-dns.com/dns-query")
    assert await strategy("missing.example.gov.tw") is None


@pytest.mark.asyncio
async def test_doh_non_object_payload_falls_through_to_next_strategy():
    calls = []
    resolver = HostResolver(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))
    resolver.strategies = [
        ("doh:google", resolver._doh_strategy("https://dns.google/resolve")),
        ("system", strategy_returning("203.0.113.30", calls, "system")),
    ]

    assert await resolver.resolve("www.example.gov.tw") == "203.0.113.30"
    assert calls == ["system"]
