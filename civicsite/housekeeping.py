"""
housekeeping.py — Periodic background maintenance
=================================================
Each in-process map has a sweep or flush that must run on a timer:

  * rate-limit store sweep   (expired windows)
  * audit buffer flush       (batched audit_logs writes)
  * threat tracker sweep     (idle per-IP records)
  * two-factor store sweep   (expired challenges, stale failed-login counters)

:class:`PeriodicTask` owns one asyncio task with an explicit stop signal, so
the application lifecycle can start and stop it cleanly.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from .audit.logger import audit_logger, failed_logins
from .auth.two_factor import two_factor_store
from .config import settings
from .security.ratelimit import rate_limiter
from .security.threats import threat_tracker

logger = logging.getLogger("civicsite.housekeeping")


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds until stopped.

    ``func`` is synchronous and runs in a worker thread. An exception inside a
    tick is logged and the loop carries on with the next tick.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Any]) -> None:
        self.name = name
        self.interval = max(0.01, float(interval))
        self.func = func
        self.runs = 0
        self.failures = 0
        self._task: Optional[asyncio.Task[None]] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"housekeeping:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.run_once()

    async def run_once(self) -> None:
        try:
            await asyncio.to_thread(self.func)
            self.runs += 1
        except Exception:
            self.failures += 1
            logger.exception("Housekeeping task %s failed", self.name)


def _sweep_auth_state() -> None:
    two_factor_store.sweep()
    failed_logins.sweep()


def build_tasks() -> List[PeriodicTask]:
    return [
        PeriodicTask("rate-limit-sweep", settings.rate_limit_sweep_seconds, rate_limiter.sweep),
        PeriodicTask("audit-flush", audit_logger.flush_interval, audit_logger.flush),
        PeriodicTask("threat-sweep", 60.0, threat_tracker.sweep),
        PeriodicTask("auth-sweep", 60.0, _sweep_auth_state),
    ]


async def start_all(tasks: List[PeriodicTask]) -> None:
    for task in tasks:
        await task.start()
    logger.info("Started %d housekeeping tasks", len(tasks))


async def stop_all(tasks: List[PeriodicTask]) -> None:
    for task in tasks:
        await task.stop()
    # Anything still buffered goes out before the process exits
    audit_logger.flush()
    logger.info("Stopped housekeeping tasks")
