"""Periodic driver for AlertEngine.check_all as a background asyncio task."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fxwatch.core.logging import bind_run_id
from fxwatch.services.alerts import AlertEngine, CheckSummary
from fxwatch.services.rates.base import utc_now

logger = logging.getLogger(__name__)


class AlertScheduler:
    def __init__(
        self,
        engine: AlertEngine,
        interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._engine = engine
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._pass_lock = asyncio.Lock()
        self.last_run_at: Optional[datetime] = None
        self.last_summary: Optional[CheckSummary] = None
        self.skipped_passes = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def checking(self) -> bool:
        return self._pass_lock.locked()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("alert scheduler started (every %gs)", self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("alert scheduler stopped")

    async def run_once(self) -> Optional[CheckSummary]:
        """Run one pass unless one is already in progress (then return None)."""
        if self._pass_lock.locked():
            self.skipped_passes += 1
            logger.info("alert pass already in progress, skipping")
            return None
        async with self._pass_lock:
            with bind_run_id("alert-check"):
                summary = await self._engine.check_all()
            self.last_run_at = self._clock()
            self.last_summary = summary
            return summary

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "checking": self.checking,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_summary": self.last_summary.as_dict() if self.last_summary else None,
            "skipped_passes": self.skipped_passes,
        }

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("alert pass crashed")
            await asyncio.sleep(self.interval_seconds)
