"""
Hosts the sync orchestrator on APScheduler.

A single date-triggered job is armed at a time. When a cycle settles the
job re-arms itself using the orchestrator's adaptive interval, so cycles
never overlap and the cadence follows the backoff tier.

Features:
- Adaptive interval (normal / elevated / high-backoff)
- Job execution history
- Clean shutdown: stop arming, then let the in-flight cycle finish or cancel it

Usage:
    engine = await start_sync_engine()
    ...
    await stop_sync_engine()
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_MAX_INSTANCES,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
    JobSubmissionEvent,
)
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from ordersync.config import AppConfig, config as default_config
from ordersync.observability import get_logger
from ordersync.orchestrator import SyncOrchestrator, build_orchestrator

logger = get_logger(__name__)

JOB_ID = "order_sync"


class JobStatus(Enum):
    """Job execution status."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of one sync cycle run by the scheduler."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def finish(self, status: JobStatus, now: datetime) -> None:
        self.status = status
        self.finished_at = now
        self.duration_ms = round((now - self.started_at).total_seconds() * 1000, 2)


class SyncScheduler:
    """
    Adaptive sync loop on an AsyncIOScheduler.

    Usage:
        scheduler = SyncScheduler(orchestrator)
        await scheduler.start()

        # Later...
        await scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        timezone: Optional[str] = None,
        first_run_delay: float = 0.0,
        max_history: int = 50,
    ):
        self.orchestrator = orchestrator
        self.tz = ZoneInfo(timezone or orchestrator.sync_config.timezone)
        self.first_run_delay = first_run_delay
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._inflight: Optional[asyncio.Task] = None
        self._history: List[JobExecution] = []
        self._max_history = max_history
        self._next_run: Optional[datetime] = None
        self._started = False
        self._stopping = False

    async def start(self) -> None:
        """Start the scheduler and arm the first cycle."""
        if self._started:
            logger.warning("Sync scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=self.tz)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._scheduler.add_listener(self._on_max_instances, EVENT_JOB_MAX_INSTANCES)
        self._scheduler.start()

        self._started = True
        self._stopping = False
        self._arm(self.first_run_delay)
        logger.info("Sync scheduler started")

    def _arm(self, delay: float) -> None:
        """Schedule the next (single) cycle `delay` seconds from now."""
        if self._stopping or not self._started:
            return

        run_date = datetime.now(self.tz) + timedelta(seconds=delay)
        self._scheduler.add_job(
            self._run_job,
            trigger=DateTrigger(run_date=run_date, timezone=self.tz),
            id=JOB_ID,
            name="Order sync cycle",
            max_instances=1,
            misfire_grace_time=None,
            replace_existing=True,
        )
        self._next_run = run_date
        logger.debug(f"Next sync cycle in {delay:.0f}s", extra={"next_run": run_date.isoformat()})

    async def _run_job(self) -> Dict[str, Any]:
        self._inflight = asyncio.current_task()
        self._next_run = None
        execution = JobExecution(started_at=datetime.now(self.tz))
        self._add_execution(execution)

        try:
            report = await self.orchestrator.run_cycle()
            execution.result = report.to_dict()
            execution.error = report.error
            execution.finish(JobStatus.FAILED if report.failed else JobStatus.SUCCESS, datetime.now(self.tz))
            return execution.result
        except asyncio.CancelledError:
            execution.finish(JobStatus.CANCELLED, datetime.now(self.tz))
            logger.info("Sync cycle cancelled")
            raise
        except Exception as e:
            execution.error = str(e)
            execution.finish(JobStatus.FAILED, datetime.now(self.tz))
            self.orchestrator.record_crash(e)
            raise
        finally:
            self._inflight = None
            self._arm(self.orchestrator.next_interval())

    # ═══════════════════════════════════════════════════════════════════════════
    # LISTENERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        if event.job_id != JOB_ID:
            return
        logger.error(
            f"Sync job crashed: {event.exception}",
            extra={"job_id": event.job_id}
        )

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        if event.job_id != JOB_ID:
            return
        execution = JobExecution(started_at=datetime.now(self.tz))
        execution.finish(JobStatus.MISSED, datetime.now(self.tz))
        self._add_execution(execution)
        logger.warning("Sync job missed its scheduled run", extra={"job_id": event.job_id})
        self._arm(self.orchestrator.next_interval())

    def _on_max_instances(self, event: JobSubmissionEvent) -> None:
        # Fired when the previous run has not been released yet; try again shortly
        if event.job_id != JOB_ID:
            return
        logger.debug("Previous sync cycle still registered, re-arming")
        self._arm(1.0)

    def _add_execution(self, execution: JobExecution) -> None:
        self._history.append(execution)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def run_now(self) -> Dict[str, Any]:
        """Pull the next cycle forward to now unless one is running."""
        if self._inflight is not None:
            return {"status": "busy"}
        self._arm(0)
        return {"status": "triggered"}

    async def stop(self, abandon_inflight: bool = True) -> None:
        """
        Stop issuing cycles.

        Args:
            abandon_inflight: cancel a running cycle (pending HTTP requests
                are cancelled with it) instead of waiting for it to finish
        """
        if not self._started:
            return

        self._stopping = True
        try:
            self._scheduler.remove_job(JOB_ID)
        except JobLookupError:
            pass
        self._next_run = None

        task = self._inflight
        if task is not None and not task.done():
            if abandon_inflight:
                logger.info("Abandoning in-flight sync cycle")
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self._scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Sync scheduler stopped")

    def get_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent executions first."""
        return [{
            "started_at": e.started_at.isoformat(),
            "finished_at": e.finished_at.isoformat() if e.finished_at else None,
            "status": e.status.value,
            "duration_ms": e.duration_ms,
            "error": e.error,
        } for e in reversed(self._history[-limit:])]

    def get_status(self) -> Dict[str, Any]:
        """Running indicator for the hosting application."""
        return {
            "running": self.is_running,
            "cycle_in_flight": self._inflight is not None,
            "next_run": self._next_run.isoformat() if self._next_run else None,
            **self.orchestrator.get_status(),
            "history": self.get_history(5),
        }

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None


# ═══════════════════════════════════════════════════════════════════════════════
# LIFECYCLE HOOKS
# ═══════════════════════════════════════════════════════════════════════════════

_engine: Optional[SyncScheduler] = None


def get_sync_engine() -> Optional[SyncScheduler]:
    return _engine


async def start_sync_engine(
    app_config: AppConfig = None,
    orchestrator: SyncOrchestrator = None,
) -> SyncScheduler:
    """Build (if needed) and start the sync engine. Call from application startup."""
    global _engine
    if _engine is not None and _engine.is_running:
        return _engine

    app_config = app_config or default_config
    orchestrator = orchestrator or build_orchestrator(app_config)
    _engine = SyncScheduler(orchestrator, timezone=app_config.sync.timezone)
    await _engine.start()
    return _engine


async def stop_sync_engine(abandon_inflight: bool = True) -> None:
    """Stop the sync engine and release its resources. Call from application shutdown."""
    global _engine
    if _engine is None:
        return
    await _engine.stop(abandon_inflight=abandon_inflight)
    await _engine.orchestrator.close()
    _engine = None
