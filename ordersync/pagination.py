"""
Full-collection pagination crawler for the WooCommerce orders API.

Handles:
- Total discovery via a header-only probe
- Bounded parallel page batches with an inter-batch delay
- Per-page failure isolation
- Two-tier strategy: one broad status=any query, or per-status enumeration
  when page 1 of the broad query is empty or keeps failing
- De-duplication by external id (most recently modified snapshot wins)

Usage:
    crawler = OrderCrawler(client, reporter=reporter)
    orders = await crawler.fetch_all("orders", {"after": "2026-10-01T00:00:00"}, max_items=500)
"""
import asyncio
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ordersync.config import CrawlConfig, config
from ordersync.exceptions import (
    TransientNetworkError,
    UpstreamError,
    UpstreamHTTPError,
    UpstreamMalformedError,
)
from ordersync.models import RemoteOrder, SyncWarning
from ordersync.observability import get_logger
from ordersync.reporting import ErrorReporter
from ordersync.resilience import RetryPolicy, retry_with_backoff

logger = get_logger(__name__)

STRATEGY_BROAD = "broad"
STRATEGY_PER_STATUS = "per-status"
STRATEGY_FILTERED = "filtered"


def is_retryable_page_error(error: BaseException) -> bool:
    """Page-level predicate: transient failures and upstream 5xx responses."""
    if isinstance(error, TransientNetworkError):
        return True
    return isinstance(error, UpstreamHTTPError) and (error.status_code or 0) >= 500


def default_first_page_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=2,
        base_delay=2.0,
        max_delay=10.0,
        retryable=is_retryable_page_error,
    )


@dataclass
class CrawlResult:
    """Everything a crawl produced, including what it could not fetch."""
    orders: List[RemoteOrder] = field(default_factory=list)
    total: Optional[int] = None
    strategy: str = STRATEGY_BROAD
    failed_pages: List[Tuple[str, int]] = field(default_factory=list)
    pages_fetched: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed_pages


class OrderCrawler:
    """
    Fetches every order matching a query, page by page.

    Pages are requested in batches of `batch_width`; the whole batch is
    awaited before the next one starts and `batch_delay` is slept between
    batches. A failed page is recorded and skipped without affecting its
    siblings.
    """

    def __init__(
        self,
        client,
        crawl_config: CrawlConfig = None,
        reporter: ErrorReporter = None,
        first_page_policy: RetryPolicy = None,
    ):
        crawl_config = crawl_config or config.crawl
        self.client = client
        self.page_size = crawl_config.page_size
        self.batch_width = max(1, crawl_config.batch_width)
        self.batch_delay = crawl_config.batch_delay
        self.max_items = crawl_config.max_items
        self.fallback_statuses = list(crawl_config.fallback_statuses)
        self.reporter = reporter or ErrorReporter()
        self.first_page_policy = first_page_policy or default_first_page_policy()

    async def fetch_all(
        self,
        resource: str = "orders",
        filters: Optional[Dict[str, Any]] = None,
        max_items: Optional[int] = None,
    ) -> List[RemoteOrder]:
        """Fetch all matching orders, de-duplicated."""
        result = await self.crawl(resource, filters, max_items)
        return result.orders

    async def crawl(
        self,
        resource: str = "orders",
        filters: Optional[Dict[str, Any]] = None,
        max_items: Optional[int] = None,
    ) -> CrawlResult:
        """
        Fetch all matching orders and report how the crawl went.

        A filter with a concrete status runs as a single query. Otherwise
        page 1 of the broad status=any query decides the strategy.
        """
        filters = dict(filters or {})
        max_items = max_items or self.max_items

        status = filters.get("status")
        if status and status != "any":
            result = CrawlResult(strategy=STRATEGY_FILTERED)
            raw = await self._crawl_query(resource, filters, max_items, result)
            result.orders = self._dedupe(raw)[:max_items]
            return result

        broad = {**filters, "status": "any"}
        result = CrawlResult(strategy=STRATEGY_BROAD)
        result.total = await self.client.probe_total(resource, broad)
        limit = min(result.total, max_items) if result.total is not None else max_items

        first_page = await self._probe_first_page(resource, broad, result)
        if first_page:
            raw = await self._crawl_query(resource, broad, limit, result, first_page=first_page)
        else:
            logger.info(
                "Broad status query unusable, enumerating statuses",
                extra={"resource": resource, "statuses": len(self.fallback_statuses)}
            )
            result.strategy = STRATEGY_PER_STATUS
            raw = await self._crawl_per_status(resource, filters, max_items, result)

        result.orders = self._dedupe(raw)[:max_items]
        logger.info(
            f"Crawled {len(result.orders)} {resource}",
            extra={
                "strategy": result.strategy,
                "total": result.total,
                "pages": result.pages_fetched,
                "failed_pages": len(result.failed_pages),
            }
        )
        return result

    async def _probe_first_page(
        self,
        resource: str,
        params: Dict[str, Any],
        result: CrawlResult,
    ) -> Optional[List[Dict[str, Any]]]:
        """Page 1 of the broad query, or None when it fails after retries."""
        try:
            page = await retry_with_backoff(
                self._fetch_page, resource, params, 1,
                policy=self.first_page_policy,
            )
        except UpstreamError as e:
            self.reporter.page_failed(_label(resource, params), 1, e)
            return None
        result.pages_fetched += 1
        return page

    async def _crawl_per_status(
        self,
        resource: str,
        filters: Dict[str, Any],
        max_items: int,
        result: CrawlResult,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        total = 0
        for status in self.fallback_statuses:
            if len(items) >= max_items:
                break
            params = {**filters, "status": status}
            status_total = await self.client.probe_total(resource, params)
            if status_total == 0:
                continue
            if status_total is not None:
                total += status_total
            limit = min(status_total, max_items) if status_total is not None else max_items
            items.extend(await self._crawl_query(resource, params, limit, result))
        result.total = total or None
        return items

    async def _crawl_query(
        self,
        resource: str,
        params: Dict[str, Any],
        limit: int,
        result: CrawlResult,
        first_page: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch pages of one query until the limit, a short page or an empty page."""
        label = _label(resource, params)
        last_page = max(1, math.ceil(limit / self.page_size))
        items: List[Dict[str, Any]] = []
        page = 1

        if first_page is not None:
            items.extend(first_page)
            if len(first_page) < self.page_size:
                return items[:limit]
            page = 2

        while page <= last_page and len(items) < limit:
            pages = list(range(page, min(page + self.batch_width, last_page + 1)))
            results = await asyncio.gather(
                *(self._fetch_page(resource, params, p) for p in pages),
                return_exceptions=True,
            )

            done = False
            for page_number, outcome in zip(pages, results):
                if isinstance(outcome, Exception):
                    result.failed_pages.append((label, page_number))
                    self.reporter.page_failed(label, page_number, outcome)
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome

                result.pages_fetched += 1
                items.extend(outcome)
                if len(outcome) < self.page_size:
                    done = True

            page = pages[-1] + 1
            if done or page > last_page or len(items) >= limit:
                break
            await asyncio.sleep(self.batch_delay)

        return items[:limit]

    async def _fetch_page(
        self,
        resource: str,
        params: Dict[str, Any],
        page: int,
    ) -> List[Dict[str, Any]]:
        page_params = {**params, "page": page, "per_page": self.page_size}
        response = await self.client.request("GET", resource, params=page_params)
        if not isinstance(response.data, list):
            raise UpstreamMalformedError(
                "Expected a list of records",
                details=f"page {page} returned {type(response.data).__name__}",
                endpoint=resource,
            )
        return response.data

    def _dedupe(self, raw_items: List[Any]) -> List[RemoteOrder]:
        """Parse records; keep the most recently modified snapshot per id."""
        by_id: Dict[int, RemoteOrder] = {}
        for raw in raw_items:
            if not isinstance(raw, dict):
                self.reporter.warn(SyncWarning(
                    field="record",
                    message=f"Dropped non-object record of type {type(raw).__name__}",
                ))
                continue

            try:
                order = RemoteOrder.from_api(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                self.reporter.warn(SyncWarning(
                    field="record",
                    message=f"Dropped unparseable record: {e}",
                    external_id=_record_id(raw),
                ))
                continue

            if order.id is None:
                self.reporter.warn(SyncWarning(
                    field="id",
                    message=f"Dropped record without an id (number={order.number or '?'})",
                ))
                continue

            current = by_id.get(order.id)
            if current is None or order.modified_at >= current.modified_at:
                by_id[order.id] = order

        return list(by_id.values())


def _record_id(raw: Dict[str, Any]) -> Optional[int]:
    try:
        return int(raw.get("id"))
    except (TypeError, ValueError):
        return None


def _label(resource: str, params: Dict[str, Any]) -> str:
    return f"{resource}?status={params.get('status', 'any')}"
