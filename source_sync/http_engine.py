"""
Scheduled HTTP polling with retry and circuit breaking.

Each watched HTTP source is refreshed on its own timer.  Requests are
expanded from the source template (variables and TOTP codes), sent
through the shared :class:`~source_sync.http_client.HttpClient` and
accounted against a circuit breaker for the endpoint.  Whatever happens,
the source ends up with content: the filtered body, or an error
message describing the failure or the open breaker.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import partial

from source_sync.engine import ContentUpdate, SourceEngine, WatchDescriptor
from source_sync.errors import CircuitOpenError, TransientError, ValidationError
from source_sync.http_client import HttpClient, HttpResponse, ensure_protocol, prepare_request
from source_sync.json_filter import apply_json_filter
from source_sync.models import JsonFilter, RequestOptions, SourceType, now_ms
from source_sync.resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    RetryConfig,
    compute_retry_delay,
)
from source_sync.scheduler import RefreshScheduler

logger = logging.getLogger(__name__)

OVERDUE_REFRESH_DELAY = 1.0  # seconds
MIN_RETRY_DELAY = 1.0  # seconds


@dataclass
class FetchResult:
    """Outcome of one fetch: display content plus the raw body."""
    content: str
    original_response: str | None = None
    status: int | None = None
    ok: bool = True
    retry_after: float | None = None


@dataclass
class ProbeResult:
    """Outcome of a one-off request made from the source editor."""
    success: bool
    status: int | None = None
    body: str = ""
    filtered: str = ""
    filtered_with: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "body": self.body,
            "filtered": self.filtered,
            "filteredWith": self.filtered_with,
            "error": self.error,
        }


def endpoint_key(method: str, url: str) -> str:
    """Breaker key for a request target."""
    return f"{(method or 'GET').upper()}:{ensure_protocol(url)}"


class HttpEngine(SourceEngine):
    """Keeps HTTP sources fresh on their refresh interval."""

    source_type = SourceType.HTTP

    def __init__(
        self,
        client: HttpClient,
        breakers: CircuitBreakerRegistry | None = None,
        retry_config: RetryConfig | None = None,
        scheduler: RefreshScheduler | None = None,
    ):
        super().__init__()
        self._client = client
        self._breakers = breakers or CircuitBreakerRegistry()
        self._retry_config = retry_config or RetryConfig()
        self._scheduler = scheduler or RefreshScheduler()
        self._descriptors: dict[int, WatchDescriptor] = {}
        self._in_flight: dict[int, asyncio.Future[FetchResult]] = {}

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    # ------ Fetching ------

    async def fetch(self, descriptor: WatchDescriptor, manual: bool = False) -> FetchResult:
        """Fetch *descriptor* once through its endpoint's circuit breaker.

        A *manual* fetch goes to the network even while the breaker is OPEN.
        Its failure leaves the breaker untouched; its success closes it.
        """
        key = endpoint_key(descriptor.method, descriptor.path)
        breaker = self._breakers.get(key)
        bypass = manual and breaker.state == CircuitState.OPEN
        if bypass:
            logger.info(
                "Manual refresh of source %d bypasses open breaker %s", descriptor.source_id, key
            )
        else:
            try:
                breaker.before_call()
            except CircuitOpenError as exc:
                logger.info("Skipping source %d: %s", descriptor.source_id, exc)
                return FetchResult(
                    content=str(exc),
                    ok=False,
                    retry_after=max(MIN_RETRY_DELAY, exc.remaining),
                )

        try:
            request = prepare_request(
                descriptor.path, descriptor.method, descriptor.request_options
            )
            response = await self._client.send(request)
        except (TransientError, ValidationError) as exc:
            if not bypass:
                breaker.record_failure()
            logger.warning("Fetch failed for source %d (%s): %s", descriptor.source_id, key, exc)
            return FetchResult(
                content=f"Error: {exc}",
                ok=False,
                retry_after=self._retry_delay(breaker),
            )

        if not response.ok:
            if not bypass:
                breaker.record_failure()
            logger.warning(
                "Source %d got HTTP %d from %s", descriptor.source_id, response.status, key
            )
            return FetchResult(
                content=_status_error(response),
                original_response=response.body,
                status=response.status,
                ok=False,
                retry_after=self._retry_delay(breaker),
            )

        if bypass:
            logger.info("Manual refresh of source %d succeeded; closing %s", descriptor.source_id, key)
            breaker.reset()
        else:
            breaker.record_success()
        content = response.body
        if descriptor.json_filter.enabled:
            content = apply_json_filter(response.body, descriptor.json_filter.path)
        return FetchResult(
            content=content, original_response=response.body, status=response.status
        )

    def _retry_delay(self, breaker: CircuitBreaker) -> float:
        if breaker.state == CircuitState.OPEN:
            return max(MIN_RETRY_DELAY, breaker.remaining_open_time())
        return compute_retry_delay(self._retry_config)

    async def probe(
        self,
        url: str,
        method: str = "GET",
        request_options: RequestOptions | None = None,
        json_filter: JsonFilter | None = None,
    ) -> ProbeResult:
        """Send one request outside any source and outside breaker accounting."""
        try:
            request = prepare_request(url, method, request_options)
            response = await self._client.send(request)
        except (TransientError, ValidationError) as exc:
            return ProbeResult(success=False, error=str(exc))

        result = ProbeResult(
            success=response.ok,
            status=response.status,
            body=response.body,
            filtered=response.body,
            error="" if response.ok else _status_error(response),
        )
        if json_filter is not None and json_filter.enabled:
            result.filtered = apply_json_filter(response.body, json_filter.path)
            result.filtered_with = json_filter.path
        return result

    # ------ Lifecycle ------

    async def watch(self, descriptor: WatchDescriptor, fetch_now: bool = True) -> None:
        self._descriptors[descriptor.source_id] = descriptor
        if fetch_now:
            await self._refresh(descriptor.source_id, scheduled=True)
        else:
            self._arm(descriptor)

    async def unwatch(self, source_id: int) -> None:
        self._descriptors.pop(source_id, None)
        self._scheduler.cancel(source_id)

    async def refresh(self, source_id: int) -> bool:
        """Fetch now on the user's behalf; see :meth:`fetch` for *manual*."""
        return await self._refresh(source_id, scheduled=False, manual=True) is not None

    async def update_schedule(self, descriptor: WatchDescriptor) -> None:
        self._descriptors[descriptor.source_id] = descriptor
        self._arm(descriptor)

    async def dispose(self) -> None:
        self._descriptors.clear()
        await self._scheduler.cancel_all()
        await self._client.close()

    # ------ Scheduling ------

    def _arm(self, descriptor: WatchDescriptor) -> None:
        """(Re)start the timer from the persisted refresh timestamps."""
        source_id = descriptor.source_id
        options = descriptor.refresh_options
        if options.interval <= 0:
            self._scheduler.cancel(source_id)
            return

        current = now_ms()
        if options.next_refresh > current:
            delay = (options.next_refresh - current) / 1000
        elif options.next_refresh:
            delay = OVERDUE_REFRESH_DELAY
        else:
            delay = options.interval_seconds
        self._scheduler.schedule(source_id, delay, partial(self._scheduled_refresh, source_id))

    async def _scheduled_refresh(self, source_id: int) -> None:
        await self._refresh(source_id, scheduled=True)

    async def _refresh(
        self, source_id: int, scheduled: bool, manual: bool = False
    ) -> FetchResult | None:
        descriptor = self._descriptors.get(source_id)
        if descriptor is None:
            return None

        # One request per source at a time; a second caller shares the result
        pending = self._in_flight.get(source_id)
        joined = pending is not None
        started = time.monotonic()
        if joined:
            logger.debug("Source %d is already refreshing; sharing its result", source_id)
            result = await asyncio.shield(pending)
        else:
            task = asyncio.ensure_future(self.fetch(descriptor, manual=manual))
            self._in_flight[source_id] = task
            try:
                result = await task
            finally:
                if self._in_flight.get(source_id) is task:
                    del self._in_flight[source_id]

        current = self._descriptors.get(source_id)
        if current is None:
            logger.debug("Discarding result for source %d: no longer watched", source_id)
            return None
        logger.debug(
            "Fetched source %d in %.2fs (ok=%s)",
            source_id,
            time.monotonic() - started,
            result.ok,
        )
        if joined and not scheduled:
            return result

        # A replaced descriptor means the schedule was reset while fetching
        refreshed_at = None
        if scheduled and current is descriptor and descriptor.refresh_options.interval > 0:
            refreshed_at = now_ms()
            descriptor.refresh_options.mark_refreshed(refreshed_at)

        await self._emit(
            ContentUpdate(
                source_id=source_id,
                content=result.content,
                original_response=result.original_response,
                refreshed_at=refreshed_at,
            )
        )

        if scheduled and self._descriptors.get(source_id) is descriptor:
            self._schedule_next(descriptor, result)
        return result

    def _schedule_next(self, descriptor: WatchDescriptor, result: FetchResult) -> None:
        interval = descriptor.refresh_options.interval_seconds
        if interval <= 0:
            return
        delay = interval
        if not result.ok and result.retry_after is not None:
            delay = min(delay, result.retry_after)
        self._scheduler.schedule(
            descriptor.source_id, delay, partial(self._scheduled_refresh, descriptor.source_id)
        )


def _status_error(response: HttpResponse) -> str:
    return f"Error: HTTP {response.status} {response.reason}".rstrip()
