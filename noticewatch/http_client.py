import asyncio
import logging
import random
import ssl
from typing import Dict, Optional, Tuple

import httpx
from fake_useragent import UserAgent
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from noticewatch.config import CrawlerConfig
from noticewatch.models import ConnectionReport, FetchResult
from noticewatch.resolver import DnsCache, HostResolver

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (httpx.HTTPError, )


class ContentTooShortError(Exception):
    """The page came back but is too small to be the real listing."""


class HTTPClient:
    def __init__(self, config: CrawlerConfig, resolver: Optional[HostResolver] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.resolver = resolver or HostResolver(
            attempt_timeout=config.dns_timeout_seconds,
            cache=DnsCache(ttl_seconds=config.dns_cache_ttl_seconds),
        )
        self._ua = None
        # The target is a fixed low-security government site with a broken chain
        self.client = httpx.AsyncClient(
            http2=False,
            follow_redirects=True,
            verify=False,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    def _random_user_agent(self) -> str:
        if self.config.user_agents:
            return random.choice(self.config.user_agents)
        if self._ua is None:
            self._ua = UserAgent()
        return self._ua.random

    def _get_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self._random_user_agent(),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
            "Accept-Language": "zh-TW,zh;q=0.9,en;q=0.8",
            "Connection": "keep-alive",
            "Upgrade-Insecure-Requests": "1",
        }

    async def _request_target(self) -> Tuple[httpx.URL, Dict[str, str], Dict[str, str], Optional[str]]:
        """
        Work out where to send the request.
        With a resolved IP the URL points at the IP and the hostname travels in
        the Host header and as TLS SNI; otherwise the original URL is used.
        """
        url = httpx.URL(self.config.target_url)
        hostname = url.host
        resolved_ip = await self.resolver.resolve(hostname) if hostname else None

        if resolved_ip and self.config.use_resolved_ip and resolved_ip != hostname:
            logger.info(f"Using resolved IP address: {resolved_ip} (Host: {hostname})")
            return (
                url.copy_with(host=resolved_ip),
                {"Host": url.netloc.decode("ascii")},
                {"sni_hostname": hostname},
                resolved_ip,
            )

        logger.info("Using original URL")
        return url, {}, {}, resolved_ip

    async def _get(self, url: httpx.URL, extra_headers: Dict[str, str], extensions: Dict[str, str]) -> str:
        headers = self._get_headers()
        headers.update(extra_headers)
        response = await self.client.get(url, headers=headers, extensions=extensions)
        response.raise_for_status()

        html = response.text
        if len(html) <= self.config.min_content_length:
            raise ContentTooShortError(f"Page content too short: {len(html)} characters")
        return html

    async def fetch_page(self) -> FetchResult:
        """
        Fetch the configured target page.
        Every attempt failure (transport error, bad status, short body) is retried with
        exponential backoff; after max_retries attempts a failed FetchResult is returned.
        """
        url, extra_headers, extensions, resolved_ip = await self._request_target()
        max_attempts = max(1, self.config.max_retries)
        attempts = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=self.config.backoff_base_seconds, max=self.config.backoff_max_seconds),
            retry=retry_if_exception_type(RETRYABLE_ERRORS + (ContentTooShortError, )),
            before_sleep=lambda state: logger.warning(
                f"⏳ Attempt {state.attempt_number}/{max_attempts} failed: {state.outcome.exception()}. Retrying..."
            ),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    logger.info(f"Fetching page (attempt {attempts}/{max_attempts})")
                    html = await self._get(url, extra_headers, extensions)
        except RETRYABLE_ERRORS + (ContentTooShortError, ) as e:
            logger.error(f"Failed to fetch {self.config.target_url} after {attempts} attempt(s): {e}")
            return FetchResult(
                ok=False,
                url=self.config.target_url,
                attempts=attempts,
                resolved_ip=resolved_ip,
                error=f"{type(e).__name__}: {e}",
            )

        logger.info(f"Successfully fetched {len(html)} characters from {self.config.target_url}")
        return FetchResult(ok=True, url=self.config.target_url, html=html, attempts=attempts, resolved_ip=resolved_ip)

    async def test_connection(self) -> ConnectionReport:
        """
        Step-by-step reachability check of the target, independent of a crawl:
        DNS, raw TCP connect, raw TLS HEAD request, then a normal HTTP GET.
        """
        url = httpx.URL(self.config.target_url)
        report = ConnectionReport(hostname=url.host)
        port = url.port or (443 if url.scheme == "https" else 80)

        report.resolved_ip = await self.resolver.resolve(url.host)
        if not report.resolved_ip:
            logger.warning("DNS resolution failed")
        else:
            report.tcp_ok = await tcp_connect(report.resolved_ip, port, self.config.dns_timeout_seconds)
            if url.scheme == "https":
                status = await raw_head_request(report.resolved_ip, port, url.host, timeout=self.config.dns_timeout_seconds)
                report.tls_ok = status is not None

        try:
            response = await self.client.get(url, headers=self._get_headers())
            report.http_status = response.status_code
            report.http_ok = response.status_code == 200
            logger.info(f"Connection test status code: {response.status_code}")
        except httpx.HTTPError as e:
            report.error = f"{type(e).__name__}: {e}"
            logger.error(f"Connection test failed: {e}")

        return report

    async def close(self):
        await self.client.aclose()


async def tcp_connect(ip: str, port: int, timeout: float = 5.0) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.warning(f"❌ TCP connection to {ip}:{port} failed: {e}")
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    logger.info(f"✅ TCP connection to {ip}:{port} successful")
    return True


async def raw_head_request(ip: str, port: int, hostname: str, path: str = "/", timeout: float = 5.0) -> Optional[int]:
    """
    Send a bare HEAD request over TLS to ip, using hostname for SNI and Host.
    Returns the status code from the response line, or None.
    """
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE

    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(ip, port, ssl=context, server_hostname=hostname),
            timeout=timeout,
        )
    except (OSError, ssl.SSLError, asyncio.TimeoutError) as e:
        logger.warning(f"❌ TLS handshake with {ip}:{port} failed: {e}")
        return None

    try:
        writer.write(f"HEAD {path} HTTP/1.1\r\nHost: {hostname}\r\nConnection: close\r\n\r\n".encode("ascii"))
        await writer.drain()
        status_line = await asyncio.wait_for(reader.readline(), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.warning(f"❌ TLS HEAD request to {ip}:{port} failed: {e}")
        return None
    finally:
        writer.close()

    parts = status_line.decode("latin-1").split()
    if len(parts) >= 2 and parts[1].isdigit():
        logger.info(f"✅ TLS HEAD {hostname} via {ip}: {parts[1]}")
        return int(parts[1])
    logger.warning(f"Unexpected TLS HEAD response: {status_line!r}")
    return None
