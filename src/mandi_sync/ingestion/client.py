"""Rate-limited async HTTP client for the data.gov.in mandi price API."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any

import httpx
from aiolimiter import AsyncLimiter

from mandi_sync.core.config import SourceConfig
from mandi_sync.core.exceptions import IngestionError, ParsingError, RateLimitError
from mandi_sync.core.models import FetchResult, RawRow, RecordFilters

logger = logging.getLogger(__name__)

# Query parameter names understood by the resource API
_FILTER_PARAMS: dict[str, str] = {
    "commodity": "filters[Commodity]",
    "state": "filters[State]",
    "district": "filters[District]",
    "market": "filters[Market]",
}
_DATE_PARAM = "filters[Arrival_Date]"
_SORT_PARAM = "sort[Arrival_Date]"


def normalize_name(value: str) -> str:
    """Title-case a filter value the way the API stores names.

    "TAMIL NADU" -> "Tamil Nadu", "onion" -> "Onion".
    """
    return " ".join(word.capitalize() for word in value.strip().split(" "))


def format_api_date(day: date) -> str:
    """Dates are sent as DD-MM-YYYY."""
    return day.strftime("%d-%m-%Y")


class MandiClient:
    """Rate-limited async client for the mandi price resource.

    data.gov.in throttles aggressively and returns intermittent 5xx errors,
    so every request goes through one shared limiter (minimum delay between
    request starts) and a bounded retry loop. Expected failures never
    raise out of the public fetch methods: they come back as a
    FetchResult with success=False.

    Use via `async with MandiClient(config) as client:`.
    """

    def __init__(self, config: SourceConfig) -> None:
        self._config = config
        self._limiter = AsyncLimiter(
            max_rate=1, time_period=config.request_delay_ms / 1000
        )
        self._client = httpx.AsyncClient(
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(config.request_timeout),
            follow_redirects=True,
        )

    async def __aenter__(self) -> MandiClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client. Called automatically by __aexit__."""
        await self._client.aclose()

    @property
    def config(self) -> SourceConfig:
        return self._config

    # --- Single Page ---

    async def fetch_records_for_date(
        self,
        day: date,
        filters: RecordFilters | None = None,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> FetchResult:
        """Fetch one page of raw rows for a date.

        Returns:
            FetchResult with success=False and no records if every attempt
            failed. Never raises for transport or HTTP errors.
        """
        params = self._build_params(
            day, filters, limit=limit or self._config.page_size, offset=offset
        )
        try:
            body = await self._rate_limited_request(params)
        except IngestionError as e:
            logger.error("Fetch failed for %s (offset %d): %s", day, offset, e)
            return FetchResult(success=False, records=[], error=str(e))

        rows = body["records"]
        records = [row for row in rows if isinstance(row, dict)]
        malformed = len(rows) - len(records)
        if malformed:
            logger.warning(
                "Dropped %d non-object rows for %s (offset %d)", malformed, day, offset
            )
        logger.debug(
            "Fetched %d rows for %s (offset %d, total %s)",
            len(records), day, offset, body.get("total"),
        )
        return FetchResult(
            success=True,
            records=records,
            total=_to_int(body.get("total")),
            pages=1,
            malformed=malformed,
        )

    # --- Pagination ---

    async def fetch_all_records_for_date(
        self,
        day: date,
        filters: RecordFilters | None = None,
    ) -> FetchResult:
        """Fetch every page for a date.

        Pages of `page_size` rows are requested with an advancing offset
        until a short page arrives or `max_records_per_date` rows have been
        collected. A failed page stops pagination; the rows gathered so far
        are returned with success=False.
        """
        page_size = self._config.page_size
        ceiling = self._config.max_records_per_date
        records: list[RawRow] = []
        total = 0
        pages = 0
        malformed = 0
        offset = 0

        while True:
            page = await self.fetch_records_for_date(
                day, filters, limit=page_size, offset=offset
            )
            if not page.success:
                return FetchResult(
                    success=False,
                    records=records,
                    total=total,
                    pages=pages,
                    malformed=malformed,
                    error=page.error,
                )

            pages += 1
            records.extend(page.records)
            malformed += page.malformed
            total = page.total or total

            # dropped rows still occupied a slot in the page
            if page.count + page.malformed < page_size:
                break
            if len(records) >= ceiling:
                logger.warning(
                    "Reached maximum of %d records for %s, stopping pagination",
                    ceiling, day,
                )
                records = records[:ceiling]
                break
            offset += page_size

        logger.info("Fetched %d records for %s in %d pages", len(records), day, pages)
        return FetchResult(
            success=True, records=records, total=total, pages=pages, malformed=malformed
        )

    # --- Batch Helpers ---

    async def fetch_by_commodities(
        self, day: date, commodities: list[str]
    ) -> FetchResult:
        """One paginated fetch per commodity, sequentially, concatenated."""
        logger.info("Fetching %d commodities for %s", len(commodities), day)
        return await self._fetch_each(
            day, [RecordFilters(commodity=c) for c in commodities]
        )

    async def fetch_by_states(self, day: date, states: list[str]) -> FetchResult:
        """One paginated fetch per state, sequentially, concatenated."""
        logger.info("Fetching %d states for %s", len(states), day)
        return await self._fetch_each(day, [RecordFilters(state=s) for s in states])

    async def fetch_multiple_dates(
        self,
        days: list[date],
        filters: RecordFilters | None = None,
    ) -> dict[date, FetchResult]:
        """Fetch several dates, `date_batch_size` at a time.

        Dates within a batch are fetched concurrently; batches run one
        after another. The shared limiter still spaces individual requests.
        """
        batch_size = self._config.date_batch_size
        n_batches = (len(days) + batch_size - 1) // batch_size
        results: dict[date, FetchResult] = {}

        for i in range(0, len(days), batch_size):
            batch = days[i : i + batch_size]
            logger.info("Processing date batch %d/%d", i // batch_size + 1, n_batches)
            batch_results = await asyncio.gather(
                *(self.fetch_all_records_for_date(d, filters) for d in batch)
            )
            results.update(zip(batch, batch_results))

        return results

    async def fetch_for_sync(
        self,
        day: date,
        states: list[str] | None = None,
        commodities: list[str] | None = None,
    ) -> FetchResult:
        """Fetch a date narrowed by the configured allow-lists.

        States take precedence over commodities; with neither, all rows
        for the date are fetched.
        """
        if states:
            return await self.fetch_by_states(day, states)
        if commodities:
            return await self.fetch_by_commodities(day, commodities)
        return await self.fetch_all_records_for_date(day)

    async def _fetch_each(
        self, day: date, filter_list: list[RecordFilters]
    ) -> FetchResult:
        records: list[RawRow] = []
        errors: list[str] = []
        pages = 0
        malformed = 0
        for filters in filter_list:
            result = await self.fetch_all_records_for_date(day, filters)
            records.extend(result.records)
            pages += result.pages
            malformed += result.malformed
            label = filters.state or filters.commodity
            if not result.success:
                errors.append(f"{label}: {result.error}")
                continue
            logger.info("Fetched %d records for %s", result.count, label)

        return FetchResult(
            success=not errors,
            records=records,
            total=len(records),
            pages=pages,
            malformed=malformed,
            error="; ".join(errors) or None,
        )

    # --- Rate Limiting & Retry ---

    def _build_params(
        self,
        day: date,
        filters: RecordFilters | None,
        *,
        limit: int,
        offset: int,
    ) -> dict[str, str | int]:
        params: dict[str, str | int] = {
            "api-key": self._config.api_key,
            "format": "json",
            "limit": limit,
            "offset": offset,
            _SORT_PARAM: "desc",
        }
        if filters is not None and not filters.is_empty():
            for field, param in _FILTER_PARAMS.items():
                value = getattr(filters, field)
                if value:
                    params[param] = normalize_name(value)
        params[_DATE_PARAM] = format_api_date(day)
        return params

    async def _rate_limited_request(self, params: dict[str, Any]) -> dict[str, Any]:
        """GET the resource with rate limiting and retry logic.

        Retry policy:
            Transport errors, timeouts, HTTP 429 and any other non-200
            status are retried up to `max_retries` times, sleeping
            `retry_backoff_seconds * attempt` between attempts.

        Returns:
            Decoded JSON body with a `records` list.

        Raises:
            IngestionError: If every attempt failed.
        """
        url = self._config.base_url
        max_retries = self._config.max_retries
        last_exc: Exception | None = None

        for attempt in range(1, max_retries + 2):
            try:
                await self._limiter.acquire()
                response = await self._client.get(url, params=params)
                return self._decode(response, url)
            except (httpx.HTTPError, IngestionError) as e:
                last_exc = e
                if attempt <= max_retries:
                    delay = self._config.retry_backoff_seconds * attempt
                    logger.warning(
                        "Request to %s failed: %s, retrying in %.1fs (attempt %d/%d)",
                        url, e, delay, attempt, max_retries,
                    )
                    await asyncio.sleep(delay)

        raise IngestionError(
            f"Request failed after {max_retries + 1} attempts: {last_exc}",
            context={"url": url, "attempts": max_retries + 1},
        ) from last_exc

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> dict[str, Any]:
        if response.status_code == 429:
            raise RateLimitError(
                f"Rate limited (429) by {url}",
                context={
                    "url": url,
                    "status_code": 429,
                    "retry_after": response.headers.get("Retry-After"),
                },
            )
        if response.status_code != 200:
            raise IngestionError(
                f"HTTP {response.status_code} from {url}",
                context={"url": url, "status_code": response.status_code},
            )
        try:
            body = response.json()
        except ValueError as e:
            raise ParsingError(
                f"Response is not valid JSON: {e}",
                context={"url": url, "reason": "invalid_json"},
            ) from e
        if not isinstance(body, dict):
            raise ParsingError(
                "Response body is not a JSON object",
                context={"url": url, "reason": "not_an_object"},
            )
        records = body.get("records")
        if records is None:
            body["records"] = []
        elif not isinstance(records, list):
            raise ParsingError(
                "Response 'records' is not a list",
                context={"url": url, "reason": "records_not_list"},
            )
        return body


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
