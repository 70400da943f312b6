import logging
import time
from typing import Any, Dict, List, Optional, Protocol

from noticewatch.cache import CacheWriteError, ItemCache
from noticewatch.config import AppConfig
from noticewatch.http_client import HTTPClient
from noticewatch.models import CacheStats, CrawlResult, Item, NotificationResult
from noticewatch.publisher import EmailNotifier
from noticewatch.scraper_base import BaseScraper

logger = logging.getLogger(__name__)

CYCLE_BUSY_ERROR = "Crawl cycle already in progress"


class Notifier(Protocol):
    async def send_notification(self, title: str, message: str, items: Optional[List[Item]] = None,
                                restrict_to_dev: bool = False) -> NotificationResult: ...

    async def test_connection(self) -> bool: ...


def notification_text(count: int, first_run: bool):
    if first_run:
        title = f"[First run after deployment] News update - Found {count} new messages"
        message = (
            f"First execution after system redeployment, found {count} new messages. "
            "This is post-deployment initialization, sent only to developers."
        )
    else:
        title = f"News update - Found {count} new messages"
        message = f"Monitoring system found {count} new messages."
    return title, message


class NoticeMonitor:
    def __init__(self, scraper: BaseScraper, cache: ItemCache, notifier: Optional[Notifier] = None,
                 cache_max_age_days: int = 30):
        self.scraper = scraper
        self.cache = cache
        self.notifier = notifier
        self.cache_max_age_days = cache_max_age_days
        self._busy = False

    @classmethod
    def from_config(cls, config: AppConfig) -> "NoticeMonitor":
        # Deferred so noticewatch does not import the scrapers package at module load
        from scrapers.notice_board import NoticeBoardScraper

        http = HTTPClient(config.crawler)
        return cls(
            scraper=NoticeBoardScraper(http),
            cache=ItemCache(config.crawler.cache_dir),
            notifier=EmailNotifier(config.email),
            cache_max_age_days=config.crawler.cache_max_age_days,
        )

    @property
    def busy(self) -> bool:
        return self._busy

    async def run_cycle(self) -> CrawlResult:
        """
        One fetch-extract-diff-notify cycle.
        Always returns a CrawlResult; nothing escapes to the scheduler.
        """
        if self._busy:
            logger.warning(CYCLE_BUSY_ERROR)
            return CrawlResult(success=False, errors=[CYCLE_BUSY_ERROR])

        self._busy = True
        started = time.monotonic()
        try:
            result = await self._run_cycle()
        except Exception as e:
            logger.exception(f"Crawl cycle failed: {e}")
            result = CrawlResult(success=False, errors=[f"Crawling error: {e}"])
        finally:
            self._busy = False

        result.execution_time_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _run_cycle(self) -> CrawlResult:
        is_first_run = self.cache.is_first_run_after_deployment()

        result = await self.scraper.crawl()
        result.is_first_run = is_first_run
        if not result.success:
            logger.error(f"❌ Crawling failed: {', '.join(result.errors)}")
            return result

        result.new_items = self.cache.diff_new(result.items)
        logger.info(f"Found {len(result.new_items)} new items out of {len(result.items)}")

        # Written on every successful fetch so crawled_at stays current for cleanup
        try:
            self.cache.merge_and_persist(result.items)
        except CacheWriteError as e:
            result.errors.append(f"Cache write failed: {e}")

        if result.new_items and self.notifier is not None:
            title, message = notification_text(len(result.new_items), is_first_run)
            try:
                notification = await self.notifier.send_notification(
                    title, message, result.new_items, restrict_to_dev=is_first_run
                )
            except Exception as e:
                logger.exception(f"Notification sending raised: {e}")
                result.errors.append(f"Notification sending failed: {e}")
                return result

            if not notification.success:
                result.errors.append(f"Notification sending failed: {notification.error}")
            elif notification.recipient_failures:
                logger.warning(f"Notification partially delivered: {notification.message}")

        return result

    async def test_connections(self) -> Dict[str, Any]:
        results: Dict[str, Any] = {"crawler": None, "notification": False}
        results["crawler"] = await self.scraper.test_connection()
        if self.notifier is not None:
            results["notification"] = await self.notifier.test_connection()
        return results

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def cleanup_cache(self, max_age_days: Optional[int] = None) -> int:
        days = self.cache_max_age_days if max_age_days is None else max_age_days
        return self.cache.cleanup_older_than(days)

    async def close(self):
        await self.scraper.http_client.close()
