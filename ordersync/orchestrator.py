"""
Adaptive sync orchestrator.

One cycle:
    connection test -> FastCheck -> (FullReconcile)? -> cursor/backoff update

- FastCheck: newest orders of the last few days across all statuses;
  unseen ones are imported, highlighted and announced.
- FullReconcile: the current month's orders via the full crawler; every
  known order is reconciled, catching status changes FastCheck misses.
  Runs on the first cycle, every Nth fast check, or once full_interval
  has elapsed.
- Failed cycles push the next interval to the elevated and then the
  high-backoff tier; one successful cycle resets it.

The orchestrator never schedules itself; see ordersync.scheduler.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from ordersync.config import AppConfig, SyncConfig, config as default_config
from ordersync.events import EventBus, SyncEvent
from ordersync.exceptions import UpstreamError, UpstreamUnreachableError
from ordersync.importer import ImportEngine
from ordersync.models import ImportOutcome, ImportResult, RemoteOrder, SyncCursor
from ordersync.normalizer import OrderNormalizer
from ordersync.notify import HighlightDispatcher
from ordersync.observability import Timer, correlation_context, get_logger
from ordersync.pagination import OrderCrawler
from ordersync.reconciler import StatusReconciler
from ordersync.reporting import ErrorReporter
from ordersync.store import DuckDBOrderStore
from ordersync.woocommerce import WooCommerceClient

logger = get_logger(__name__)

WOO_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class SyncState(str, Enum):
    IDLE = "idle"
    FAST_CHECK = "fast_check"
    FULL_RECONCILE = "full_reconcile"
    BACKOFF = "backoff"


@dataclass
class CycleReport:
    """What one cycle did and whether it counts as a failure."""
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    full_reconcile: bool = False
    fetched: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    order_failures: int = 0
    warnings: int = 0
    failed_pages: int = 0
    images_backfilled: int = 0
    status_changed: List[int] = field(default_factory=list)
    upstream_errors: List[str] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def failed(self) -> bool:
        """Persistence conflicts alone never fail a cycle."""
        return (
            self.aborted
            or self.failed_pages > 0
            or self.order_failures > 0
            or bool(self.upstream_errors)
        )

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return round((self.finished_at - self.started_at).total_seconds() * 1000, 2)

    def tally(self, outcomes: List[ImportOutcome]) -> None:
        for outcome in outcomes:
            self.warnings += len(outcome.warnings)
            if outcome.result is ImportResult.NEW:
                self.new += 1
            elif outcome.result is ImportResult.UPDATED:
                self.updated += 1
            elif outcome.result is ImportResult.SKIPPED:
                self.skipped += 1
            else:
                self.conflicts += 1
            if outcome.status_changed:
                self.status_changed.append(outcome.external_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "full_reconcile": self.full_reconcile,
            "fetched": self.fetched,
            "new": self.new,
            "updated": self.updated,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "order_failures": self.order_failures,
            "warnings": self.warnings,
            "failed_pages": self.failed_pages,
            "images_backfilled": self.images_backfilled,
            "status_changed": len(self.status_changed),
            "aborted": self.aborted,
            "error": self.error,
            "failed": self.failed,
        }


class SyncOrchestrator:
    """
    Drives sync cycles and owns the SyncCursor.

    Usage:
        orchestrator = build_orchestrator()
        report = await orchestrator.run_cycle()
        await asyncio.sleep(orchestrator.next_interval())
    """

    def __init__(
        self,
        client,
        store,
        crawler: OrderCrawler,
        normalizer: OrderNormalizer,
        importer: ImportEngine,
        dispatcher: HighlightDispatcher,
        events: EventBus,
        reporter: ErrorReporter,
        sync_config: SyncConfig = None,
        max_items: Optional[int] = None,
        clock: Callable[[], datetime] = None,
    ):
        self.client = client
        self.store = store
        self.crawler = crawler
        self.normalizer = normalizer
        self.importer = importer
        self.dispatcher = dispatcher
        self.events = events
        self.reporter = reporter
        self.sync_config = sync_config or default_config.sync
        self.max_items = max_items
        self.tz = ZoneInfo(self.sync_config.timezone)
        self.clock = clock or (lambda: datetime.now(self.tz))

        self.state = SyncState.IDLE
        self.cursor = SyncCursor()
        self.last_report: Optional[CycleReport] = None

    # ═══════════════════════════════════════════════════════════════════════════
    # CYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    async def run_cycle(self) -> CycleReport:
        """
        Run one full cycle and update the cursor.

        Only connectivity loss aborts the cycle; page and order failures
        are isolated and counted.
        """
        with correlation_context() as cycle_id:
            now = self.clock()
            report = CycleReport(cycle_id=cycle_id, started_at=now)
            await self.events.emit(SyncEvent.SYNC_STARTED, {"cycle_id": cycle_id})
            self.normalizer.reset_cache()

            with Timer("Sync cycle", logger, warn_threshold_ms=60000):
                try:
                    await self.client.test_connection()

                    self.state = SyncState.FAST_CHECK
                    await self.fast_check(report)

                    if self._full_reconcile_due(now):
                        self.state = SyncState.FULL_RECONCILE
                        report.full_reconcile = True
                        await self.full_reconcile(report)

                    await self.dispatcher.clear_final_highlights()

                except UpstreamUnreachableError as e:
                    report.aborted = True
                    report.error = str(e)
                    report.error_kind = e.kind.value
                    logger.warning(f"Cycle aborted, upstream unreachable: {e}")
                except UpstreamError as e:
                    report.upstream_errors.append(str(e))
                    report.error = str(e)
                    report.error_kind = e.kind.value
                    logger.error(f"Cycle interrupted by upstream error: {e}")

            report.finished_at = self.clock()
            await self._settle(report)
            return report

    async def fast_check(self, report: CycleReport) -> List[ImportOutcome]:
        """Import orders from the newest page(s) that are not stored yet."""
        since = self.clock() - timedelta(days=self.sync_config.fast_lookback_days)
        result = await self.crawler.crawl(
            "orders",
            {"after": since.strftime(WOO_DATE_FORMAT), "orderby": "date", "order": "desc"},
            max_items=self.sync_config.fast_check_items,
        )
        report.fetched += len(result.orders)
        report.failed_pages += len(result.failed_pages)

        known = await self.store.get_many([order.id for order in result.orders])
        unseen = [order for order in result.orders if order.id not in known]

        outcomes = await self._import_all(unseen, report)
        report.tally(outcomes)
        await self._announce(outcomes)

        self.cursor.fast_checks_since_full += 1
        logger.info(
            f"Fast check: {len(unseen)} unseen of {len(result.orders)} recent orders",
            extra={"new": report.new}
        )
        return outcomes

    async def full_reconcile(self, report: CycleReport) -> List[ImportOutcome]:
        """Walk the current month and reconcile every order."""
        now = self.clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        result = await self.crawler.crawl(
            "orders",
            {"after": month_start.strftime(WOO_DATE_FORMAT)},
            max_items=self.max_items,
        )
        report.fetched += len(result.orders)
        report.failed_pages += len(result.failed_pages)

        known = await self.store.get_many([order.id for order in result.orders])
        unseen = [order for order in result.orders if order.id not in known]

        outcomes = await self._import_all(unseen, report)
        new_outcomes = list(outcomes)

        pairs = [
            (known[order.id], self.normalizer.normalize(order, now=_naive_utc(now)))
            for order in result.orders
            if order.id in known
        ]
        outcomes.extend(await self.importer.reconcile_known(pairs))

        if self.sync_config.image_backfill_limit > 0:
            report.images_backfilled = await self.importer.backfill_stored_images(
                self.sync_config.image_backfill_limit
            )

        report.tally(outcomes)
        await self._announce(new_outcomes)

        changed = [outcome.external_id for outcome in outcomes if outcome.status_changed]
        if changed:
            await self.events.emit(
                SyncEvent.ORDERS_STATUS_CHANGED,
                {"count": len(changed), "external_ids": changed[:50]},
            )

        self.cursor.fast_checks_since_full = 0
        self.cursor.last_full_at = now
        logger.info(
            f"Full reconcile: {len(result.orders)} orders, {len(changed)} status changes",
            extra={"strategy": result.strategy, "complete": result.complete}
        )
        return outcomes

    async def _import_all(self, orders: List[RemoteOrder], report: CycleReport) -> List[ImportOutcome]:
        """Normalize and import orders in chunks of order_concurrency."""
        outcomes: List[ImportOutcome] = []
        width = max(1, self.sync_config.order_concurrency)
        now = _naive_utc(self.clock())

        for start in range(0, len(orders), width):
            chunk = orders[start:start + width]
            results = await asyncio.gather(
                *(self.importer.import_or_update(self.normalizer.normalize(order, now=now)) for order in chunk),
                return_exceptions=True,
            )
            for order, result in zip(chunk, results):
                if isinstance(result, Exception):
                    report.order_failures += 1
                    self.reporter.order_failed(order.id, result)
                    continue
                if isinstance(result, BaseException):
                    raise result
                outcomes.append(result)
        return outcomes

    async def _announce(self, outcomes: List[ImportOutcome]) -> None:
        new_orders = [o.order for o in outcomes if o.result is ImportResult.NEW and o.order]
        if new_orders:
            await self.dispatcher.dispatch(new_orders)

    # ═══════════════════════════════════════════════════════════════════════════
    # CURSOR / BACKOFF
    # ═══════════════════════════════════════════════════════════════════════════

    def _full_reconcile_due(self, now: datetime) -> bool:
        if self.cursor.last_full_at is None:
            return True
        if self.cursor.fast_checks_since_full >= self.sync_config.full_every_n:
            return True
        elapsed = (now - self.cursor.last_full_at).total_seconds()
        return elapsed >= self.sync_config.full_interval

    async def _settle(self, report: CycleReport) -> None:
        self.last_report = report

        if not report.failed:
            self.cursor.record_success(report.finished_at, report.new)
            self.state = SyncState.IDLE
            await self.events.emit(SyncEvent.SYNC_COMPLETED, report.to_dict())
            logger.info("Sync cycle completed", extra=report.to_dict())
            return

        failures = self.cursor.record_failure()
        self.state = SyncState.BACKOFF
        reason = report.error or f"{report.failed_pages} failed pages, {report.order_failures} failed orders"
        self.reporter.cycle_failed(reason, failures, report.error_kind)
        await self.events.emit(SyncEvent.SYNC_FAILED, {**report.to_dict(), "consecutive_failures": failures})

        if failures >= self.sync_config.alert_after and not self.cursor.alerted:
            self.cursor.alerted = True
            await self.dispatcher.alert_sync_issue(reason, failures, report.error_kind)

    def record_crash(self, error: BaseException) -> None:
        """Count a cycle that died on an unexpected error toward backoff."""
        failures = self.cursor.record_failure()
        self.state = SyncState.BACKOFF
        self.reporter.cycle_failed(str(error) or type(error).__name__, failures, type(error).__name__)

    def next_interval(self) -> float:
        """Seconds until the next cycle: normal, elevated or high-backoff tier."""
        failures = self.cursor.consecutive_failures
        if failures >= self.sync_config.high_after:
            return self.sync_config.high_backoff_interval
        if failures >= self.sync_config.elevated_after:
            return self.sync_config.elevated_interval
        return self.sync_config.fast_interval

    def get_status(self) -> Dict[str, Any]:
        last_alert = self.events.last(SyncEvent.SYNC_ALERT)
        return {
            "state": self.state.value,
            "cursor": self.cursor.to_dict(),
            "next_interval": self.next_interval(),
            "last_report": self.last_report.to_dict() if self.last_report else None,
            "last_alert": last_alert.to_dict() if last_alert else None,
            "errors": self.reporter.snapshot(),
        }

    async def close(self) -> None:
        """Release the HTTP client and the store connection."""
        await self.client.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await close_store()


def _naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)


def build_orchestrator(
    app_config: AppConfig = None,
    store=None,
    client=None,
    events: EventBus = None,
    reporter: ErrorReporter = None,
) -> SyncOrchestrator:
    """Wire every component from configuration."""
    app_config = app_config or default_config
    reporter = reporter or ErrorReporter()
    events = events or EventBus()
    client = client or WooCommerceClient(api_config=app_config.api)
    store = store or DuckDBOrderStore(app_config.store.db_path, reporter=reporter)

    normalizer = OrderNormalizer(client=client, reporter=reporter)
    reconciler = StatusReconciler(store, reporter=reporter)
    importer = ImportEngine(
        store, normalizer, reconciler,
        reporter=reporter,
        tolerance=app_config.sync.total_tolerance,
    )

    return SyncOrchestrator(
        client=client,
        store=store,
        crawler=OrderCrawler(client, crawl_config=app_config.crawl, reporter=reporter),
        normalizer=normalizer,
        importer=importer,
        dispatcher=HighlightDispatcher(store, events),
        events=events,
        reporter=reporter,
        sync_config=app_config.sync,
        max_items=app_config.crawl.max_items,
    )
