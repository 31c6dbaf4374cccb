"""
Floor Analytics - Interval Scheduler

This module provides the fixed-interval background loop shared by the fleet
availability sync and the analytics refresh. Stopping a scheduler prevents new
cycles from starting; a cycle already in progress runs to completion.
"""

import asyncio
from typing import Optional

import structlog

logger = structlog.get_logger()


class IntervalScheduler:
    """Runs ``run_once`` immediately on start and then every ``interval`` seconds."""

    name = "scheduler"

    def __init__(self, interval_seconds: float):
        self.interval = interval_seconds
        self.is_running = False
        self.task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def run_once(self):
        raise NotImplementedError

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler is already running", scheduler=self.name)
            return

        self.is_running = True
        self._stop_event = asyncio.Event()
        self.task = asyncio.create_task(self._run_loop(self._stop_event))

        logger.info("Scheduler started", scheduler=self.name, interval=self.interval)

    async def stop(self) -> None:
        """Signal the loop and wait for the current cycle; never cancels it."""
        if not self.is_running:
            logger.warning("Scheduler is not running", scheduler=self.name)
            return

        self.is_running = False
        self._stop_event.set()

        if self.task:
            await self.task
            self.task = None

        logger.info("Scheduler stopped", scheduler=self.name)

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Error in scheduler loop", scheduler=self.name, error=str(e))

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
