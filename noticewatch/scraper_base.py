from abc import ABC, abstractmethod
from typing import List
import logging
import time

from noticewatch.http_client import HTTPClient
from noticewatch.models import ConnectionReport, CrawlResult, Item

logger = logging.getLogger(__name__)


class BaseScraper(ABC):
    def __init__(self, http_client: HTTPClient):
        self.http_client = http_client
        self.name = self.__class__.__name__

    @abstractmethod
    def extract(self, html: str) -> List[Item]:
        """
        Turn the fetched page into candidate items.
        Returns an empty list when nothing matches; never raises on odd markup.
        """
        pass

    async def crawl(self) -> CrawlResult:
        """
        Main entry point for the scraper: fetch the target page and extract items.
        A failed fetch yields success=False; an empty page yields success with no items.
        """
        started = time.monotonic()
        fetched = await self.http_client.fetch_page()

        if not fetched.ok:
            return CrawlResult(
                success=False,
                errors=[f"Failed to fetch page content: {fetched.error}"],
                execution_time_ms=int((time.monotonic() - started) * 1000),
            )

        items = self.extract(fetched.html)
        logger.info(f"{self.name} crawled {len(items)} items")
        return CrawlResult(
            success=True,
            items=items,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )

    async def test_connection(self) -> ConnectionReport:
        return await self.http_client.test_connection()
