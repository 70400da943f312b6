import asyncio
import contextlib
import logging
import os
import signal
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI

from noticewatch.config import AppConfig
from noticewatch.monitor import NoticeMonitor

logger = logging.getLogger(__name__)

SERVICE_NAME = "Notice Monitor"
SERVICE_VERSION = "2.0.0"


def create_health_app(daemon: "NoticeDaemon") -> FastAPI:
    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "uptime": daemon.uptime_seconds,
            "cycles": daemon.cycles_run,
            "last_cycle_success": daemon.last_cycle_success,
            "cycle_in_progress": daemon.monitor.busy,
        }

    return app


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the daemon."""

    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def read_pid(pid_file: str) -> Optional[int]:
    try:
        return int(Path(pid_file).read_text().strip())
    except (OSError, ValueError):
        return None


def is_running(pid_file: str) -> bool:
    pid = read_pid(pid_file)
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        Path(pid_file).unlink(missing_ok=True)
        return False
    except PermissionError:
        # Process exists but belongs to someone else
        return True
    return True


def stop_running(pid_file: str) -> bool:
    pid = read_pid(pid_file)
    if pid is None or not is_running(pid_file):
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    return True


class NoticeDaemon:
    def __init__(self, config: AppConfig, monitor: Optional[NoticeMonitor] = None):
        """
        Long-running service: interval scheduler plus /health endpoint.

        Cycles never overlap: the next wait only starts after the previous cycle
        returned. On SIGINT/SIGTERM an in-flight cycle finishes (cache write included)
        before the process exits.
        """
        self.config = config
        self.monitor = monitor or NoticeMonitor.from_config(config)
        self.pid_file = Path(config.server.pid_file).resolve()
        self.started_at: Optional[float] = None
        self.cycles_run = 0
        self.last_cycle_success: Optional[bool] = None
        self._stop = asyncio.Event()
        self._server: Optional[HealthServer] = None

    @property
    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self.started_at) if self.started_at else 0

    @property
    def interval_seconds(self) -> float:
        return self.config.schedule.interval_hours * 3600

    def request_stop(self, signame: str = "stop"):
        logger.info(f"Received {signame}, shutting down service...")
        self._stop.set()

    def _write_pid_file(self):
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()))
        logger.info(f"PID file written: {self.pid_file}")

    def _remove_pid_file(self):
        self.pid_file.unlink(missing_ok=True)

    async def run_check(self) -> bool:
        logger.info("Starting crawler check...")
        result = await self.monitor.run_cycle()
        self.cycles_run += 1
        self.last_cycle_success = result.success

        if not result.success:
            logger.error(f"❌ Crawling failed: {', '.join(result.errors)}")
            return False

        if result.new_items:
            logger.info(f"🆕 Found {len(result.new_items)} new messages!")
            for idx, item in enumerate(result.new_items, 1):
                logger.info(f"  {idx}. {item.title}")
        else:
            logger.info("ℹ️  No new messages found")
        for error in result.errors:
            logger.warning(f"⚠️  {error}")
        return True

    async def _scheduler(self):
        if self.config.schedule.start_immediately:
            await self.run_check()

        if not self.config.schedule.enabled:
            logger.info("Scheduler not enabled, waiting for shutdown")
            await self._stop.wait()
            return

        logger.info(f"Scheduler interval set to {self.config.schedule.interval_hours} hours")
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                await self.run_check()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except NotImplementedError:
                logger.warning(f"Signal handler for {sig.name} not supported on this platform")

    async def run(self):
        self.started_at = time.monotonic()
        self._write_pid_file()
        self._install_signal_handlers()

        server_config = uvicorn.Config(
            create_health_app(self),
            host=self.config.server.health_check_host,
            port=self.config.server.health_check_port,
            log_level="warning",
        )
        self._server = HealthServer(server_config)
        server_task = asyncio.create_task(self._server.serve())
        logger.info(f"Health check server started (port: {self.config.server.health_check_port})")

        try:
            await self._scheduler()
        finally:
            self._server.should_exit = True
            await server_task
            await self.monitor.close()
            self._remove_pid_file()
            logger.info("✅ Daemon stopped")
