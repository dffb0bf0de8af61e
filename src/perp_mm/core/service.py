"""Base class providing the shared lifecycle of the long-lived loops.

- Lifecycle management (``start`` / ``stop``)
- Periodic background loop calling ``_work`` every ``interval`` seconds
- Cooperative cancellation through the ``EngineContext`` stop flag,
  checked at the top of every iteration
- Health reporting with error tracking

Subclasses implement ``_work()`` and optionally ``_on_start`` / ``_on_stop``.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from .context import EngineContext
from .enums import ServiceStatus

logger = logging.getLogger(__name__)


class HealthReport(BaseModel):
    name: str
    healthy: bool
    status: ServiceStatus
    message: str = ""
    last_work_at: datetime | None = None
    error_count: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class PeriodicService(abc.ABC):
    """Abstract base for the synchronizer and market maker loops.

    Parameters
    ----------
    context:
        Shared engine context; its stop flag ends the loop.
    interval:
        Seconds between ``_work()`` invocations.
    """

    def __init__(self, context: EngineContext, interval: float) -> None:
        self._context = context
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._running = False
        self._status = ServiceStatus.CREATED
        self._error_count = 0
        self._last_work_at: datetime | None = None

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def status(self) -> ServiceStatus:
        return self._status

    @property
    def interval(self) -> float:
        return self._interval

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("%s is already running", self.name)
            return

        self._status = ServiceStatus.STARTING
        self._running = True
        await self._on_start()
        self._task = asyncio.create_task(self._loop(), name=f"service-{self.name}")
        self._status = ServiceStatus.RUNNING
        logger.info("%s started (interval=%ss)", self.name, self._interval)

    async def stop(self, cancel: bool = False) -> None:
        """Stop admitting new iterations and wait for the current one.

        With ``cancel=True`` the running iteration is cancelled instead.
        """
        self._status = ServiceStatus.STOPPING
        self._running = False

        if self._task is not None:
            if cancel:
                self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        await self._on_stop()
        self._status = ServiceStatus.STOPPED
        logger.info("%s stopped", self.name)

    async def _on_start(self) -> None:
        """Called during start before the loop begins."""

    async def _on_stop(self) -> None:
        """Called during stop after the loop ends."""

    @abc.abstractmethod
    async def _work(self) -> None:
        """Single unit of periodic work."""

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def _should_continue(self) -> bool:
        return self._running and self._context.running

    async def _loop(self) -> None:
        while self._should_continue():
            try:
                await self._work()
                self._last_work_at = datetime.now(timezone.utc)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._error_count += 1
                logger.exception(
                    "%s work cycle failed (errors=%d)", self.name, self._error_count
                )
            if not self._should_continue():
                break
            await self._context.sleep(self._interval)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_check(self) -> HealthReport:
        healthy = self._running and self._status == ServiceStatus.RUNNING
        message = ""
        if not self._running:
            message = "Service is not running"
        elif self._error_count > 0:
            message = f"Last error count: {self._error_count}"
        return HealthReport(
            name=self.name,
            healthy=healthy,
            status=self._status,
            message=message,
            last_work_at=self._last_work_at,
            error_count=self._error_count,
        )
