import asyncio
import ipaddress
import logging
import socket
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import dns.asyncresolver
import dns.exception
import httpx

logger = logging.getLogger(__name__)

# Classic resolvers, tried in order before falling back to DNS-over-HTTPS
PUBLIC_RESOLVERS = [
    ("google", "8.8.8.8"),
    ("cloudflare", "1.1.1.1"),
    ("google", "8.8.4.4"),
    ("cloudflare", "1.0.0.1"),
    ("opendns", "208.67.222.222"),
]

DOH_ENDPOINTS = [
    ("google", "https://dns.google/resolve"),
    ("cloudflare", "https://cloudflare-dns.com/dns-query"),
]

DNS_RECORD_A = 1

Strategy = Tuple[str, Callable[[str], Awaitable[Optional[str]]]]


def is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
        return True
    except ValueError:
        return False


class DnsCache:
    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def get(self, hostname: str) -> Optional[str]:
        entry = self._entries.get(hostname)
        if entry is None:
            return None
        ip, stored_at = entry
        if self.clock() - stored_at < self.ttl_seconds:
            return ip
        # Expired, evict on read
        del self._entries[hostname]
        return None

    def put(self, hostname: str, ip: str):
        self._entries[hostname] = (ip, self.clock())
        logger.debug(f"DNS result cached: {hostname} -> {ip} (TTL: {self.ttl_seconds}s)")

    def __len__(self):
        return len(self._entries)


class HostResolver:
    def __init__(self, attempt_timeout: float = 5.0, cache: Optional[DnsCache] = None,
                 strategies: Optional[List[Strategy]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Resolves a hostname to an IPv4 address through an ordered chain of strategies.

        Args:
            attempt_timeout: Seconds allowed for each individual strategy
            cache: In-memory cache of successful lookups
            strategies: Override the default chain (name, coroutine) pairs
            transport: httpx transport for the DNS-over-HTTPS queries
        """
        self.attempt_timeout = attempt_timeout
        self.cache = cache if cache is not None else DnsCache()
        self.transport = transport
        self.strategies = strategies if strategies is not None else self._default_strategies()

    def _default_strategies(self) -> List[Strategy]:
        strategies: List[Strategy] = []
        for provider, nameserver in PUBLIC_RESOLVERS:
            strategies.append((f"dns:{provider}:{nameserver}", self._udp_strategy(nameserver)))
        for provider, endpoint in DOH_ENDPOINTS:
            strategies.append((f"doh:{provider}", self._doh_strategy(endpoint)))
        strategies.append(("system", self._resolve_system))
        return strategies

    async def resolve(self, hostname: str) -> Optional[str]:
        """
        Return an IP for hostname, or None once every strategy has failed.
        Strategies run one after another; the first answer wins.
        """
        if is_ip_literal(hostname):
            return hostname

        cached = self.cache.get(hostname)
        if cached:
            logger.info(f"Using DNS cache: {hostname} -> {cached}")
            return cached

        total = len(self.strategies)
        for idx, (name, strategy) in enumerate(self.strategies, 1):
            try:
                logger.debug(f"Trying DNS resolution ({idx}/{total}) via {name}: {hostname}")
                ip = await asyncio.wait_for(strategy(hostname), timeout=self.attempt_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"DNS resolution via {name} timed out after {self.attempt_timeout}s")
                continue
            except (dns.exception.DNSException, httpx.HTTPError, OSError, ValueError, KeyError) as e:
                logger.warning(f"DNS resolution via {name} failed: {e}")
                continue

            if ip and is_ip_literal(ip):
                logger.info(f"✅ DNS resolution successful via {name}: {hostname} -> {ip}")
                self.cache.put(hostname, ip)
                return ip
            logger.warning(f"DNS resolution via {name} returned no address")

        logger.error(f"❌ All DNS resolution methods failed for {hostname}")
        return None

    def _udp_strategy(self, nameserver: str):
        async def strategy(hostname: str) -> Optional[str]:
            resolver = dns.asyncresolver.Resolver(configure=False)
            resolver.nameservers = [nameserver]
            resolver.timeout = self.attempt_timeout
            resolver.lifetime = self.attempt_timeout
            answer = await resolver.resolve(hostname, "A")
            for record in answer:
                return record.address
            return None
        return strategy

    def _doh_strategy(self, endpoint: str):
        async def strategy(hostname: str) -> Optional[str]:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.attempt_timeout) as client:
                response = await client.get(
                    endpoint,
                    params={"name": hostname, "type": "A"},
                    headers={"Accept": "application/dns-json"},
                )
                response.raise_for_status()
                payload = response.json()

            if not isinstance(payload, dict):
                return None
            # CNAME records may precede the A record in the answer section
            for answer in payload.get("Answer") or []:
                if isinstance(answer, dict) and answer.get("type") == DNS_RECORD_A and answer.get("data"):
                    return answer["data"]
            return None
        return strategy

    async def _resolve_system(self, hostname: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(hostname, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
        for family, _, _, _, sockaddr in infos:
            return sockaddr[0]
        return None
