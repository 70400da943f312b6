import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from noticewatch.cache import CacheWriteError, ItemCache
from noticewatch.config import DEFAULT_CONFIG_PATH, ConfigError, load_config
from noticewatch.daemon import NoticeDaemon, is_running, read_pid, stop_running
from noticewatch.monitor import NoticeMonitor

# Load env
load_dotenv()

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


async def run_crawler(monitor: NoticeMonitor) -> int:
    logger.info("=== Notice Crawler ===")
    try:
        result = await monitor.run_cycle()
    finally:
        await monitor.close()

    if not result.success:
        logger.error("❌ Crawling failed!")
        for error in result.errors:
            logger.error(f"  - {error}")
        return 1

    logger.info("✅ Crawling successful!")
    logger.info(f"📊 Total crawled {len(result.items)} messages")
    logger.info(f"🆕 Found {len(result.new_items)} new messages")
    logger.info(f"⏱️ Execution time: {result.execution_time_ms / 1000:.2f} seconds")

    for idx, item in enumerate(result.new_items, 1):
        logger.info(f"  {idx}. {item.title}")
        logger.info(f"     Link: {item.link}")
        if item.date:
            logger.info(f"     Date: {item.date}")

    for error in result.errors:
        logger.warning(f"⚠️  {error}")
    return 0


async def test_connections(monitor: NoticeMonitor) -> int:
    logger.info("=== Connection Test ===")
    try:
        results = await monitor.test_connections()
    finally:
        await monitor.close()

    report = results["crawler"]
    logger.info(f"🔎 DNS: {report.resolved_ip or 'failed'}")
    logger.info(f"🔌 TCP: {'✅' if report.tcp_ok else '❌'}  TLS: {'✅' if report.tls_ok else '❌'}")
    logger.info(f"🌐 Crawler connection: {'✅ Success' if report.ok else '❌ Failed'} (status: {report.http_status})")
    if report.error:
        logger.info(f"   Error: {report.error}")
    logger.info(f"📧 Notification connection: {'✅ Success' if results['notification'] else '❌ Failed'}")

    if report.ok and results["notification"]:
        logger.info("✅ All connection tests passed!")
        return 0
    logger.error("❌ Some connection tests failed!")
    return 1


def show_stats(cache: ItemCache) -> int:
    stats = cache.stats()
    logger.info("=== Cache Statistics ===")
    logger.info(f"📊 Total messages: {stats.total_items}")
    logger.info(f"💾 Cache size: {stats.size_bytes / (1024 * 1024):.2f} MB")
    if stats.total_items:
        logger.info(f"📅 Oldest message: {stats.oldest_crawled_at.isoformat()}")
        logger.info(f"📅 Newest message: {stats.newest_crawled_at.isoformat()}")
    else:
        logger.info("ℹ️  Cache is empty")
    return 0


def cleanup(cache: ItemCache, days: int) -> int:
    logger.info(f"=== Cache Cleanup (keep {days} days) ===")
    try:
        removed = cache.cleanup_older_than(days)
    except CacheWriteError as e:
        logger.error(f"❌ Cleanup failed: {e}")
        return 1

    if removed:
        logger.info(f"✅ Cleaned up {removed} old messages")
    else:
        logger.info("ℹ️  No old messages to clean up")
    return 0


def daemon_command(config, action: str) -> int:
    pid_file = config.server.pid_file

    if action == "status":
        if is_running(pid_file):
            logger.info(f"✅ Service is running (PID: {read_pid(pid_file)})")
            return 0
        logger.info("❌ Service is not running")
        return 1

    if action == "stop":
        if not stop_running(pid_file):
            logger.error("❌ Service is not running")
            return 1
        logger.info("Stop signal sent")
        return 0

    if is_running(pid_file):
        logger.error("❌ Service is already running")
        return 1

    logger.info("=== Starting Notice Monitor Daemon ===")
    asyncio.run(NoticeDaemon(config).run())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Watch a notice board page and email new postings")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("crawl", help="Run one crawl cycle now")
    sub.add_parser("test", help="Test connectivity to the target and SMTP server")
    sub.add_parser("stats", help="Show cache statistics")
    cleanup_parser = sub.add_parser("cleanup", help="Remove cache entries older than --days")
    cleanup_parser.add_argument("--days", type=int, default=None)
    daemon_parser = sub.add_parser("daemon", help="Run or control the scheduler daemon")
    daemon_parser.add_argument("action", choices=["start", "stop", "status"])
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"❌ Error: {e}")
        return 1

    if args.command == "daemon":
        return daemon_command(config, args.action)

    if args.command in ("stats", "cleanup"):
        cache = ItemCache(config.crawler.cache_dir)
        if args.command == "stats":
            return show_stats(cache)
        days = args.days if args.days is not None else config.crawler.cache_max_age_days
        return cleanup(cache, days)

    monitor = NoticeMonitor.from_config(config)
    if args.command == "crawl":
        return asyncio.run(run_crawler(monitor))
    if args.command == "test":
        return asyncio.run(test_connections(monitor))
    return 1


if __name__ == "__main__":
    sys.exit(main())
