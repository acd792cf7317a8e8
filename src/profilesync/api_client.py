"""
Async client for the business-data API.

Thin wrapper over httpx.AsyncClient: bearer-token auth, a per-request
timeout, and conversion of every failure into the sync package's boundary
variants (ApiError / UnsupportedFieldError / TransportTimeout /
ConnectionFailure) so the classifier never has to parse messages.

Every list call returns a Page. The orchestrator depends only on the
BusinessDataClient protocol, so tests can inject fakes.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from profilesync.sync.errors import (
    ApiError,
    ConnectionFailure,
    TransportTimeout,
    UnsupportedFieldError,
)
from profilesync.sync.normalizer import PERFORMANCE_METRICS

logger = logging.getLogger(__name__)

ACCOUNTS_PAGE_SIZE = 20
LOCATIONS_PAGE_SIZE = 100
REVIEWS_PAGE_SIZE = 50
POSTS_PAGE_SIZE = 100
KEYWORDS_PAGE_SIZE = 100

LOCATION_READ_MASK = (
    "name,languageCode,storeCode,title,phoneNumbers,categories,"
    "storefrontAddress,websiteUri,metadata"
)


@dataclass
class Page:
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_page_token: Optional[str] = None


class BusinessDataClient(Protocol):
    async def list_accounts(self, page_token: Optional[str] = None) -> Page: ...

    async def list_locations(self, account_ref: str, page_token: Optional[str] = None) -> Page: ...

    async def list_reviews(
        self, account_ref: str, location_ref: str, page_token: Optional[str] = None
    ) -> Page: ...

    async def list_posts(
        self, account_ref: str, location_ref: str, page_token: Optional[str] = None
    ) -> Page: ...

    async def fetch_performance(
        self, location_ref: str, start: date, end: date, window_days: int
    ) -> Page: ...

    async def list_search_keywords(
        self, location_ref: str, year: int, month: int, page_token: Optional[str] = None
    ) -> Page: ...


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
    return response.text


def _date_params(prefix: str, d: date) -> Dict[str, int]:
    return {
        f"{prefix}.year": d.year,
        f"{prefix}.month": d.month,
        f"{prefix}.day": d.day,
    }


def aggregate_daily_metrics(payload: Dict[str, Any]) -> Dict[str, int]:
    """Sum a multi-daily-metric time series response into per-metric totals."""
    totals: Dict[str, int] = {}
    for multi in payload.get("multiDailyMetricTimeSeries") or []:
        for series in multi.get("dailyMetricTimeSeries") or []:
            metric = series.get("dailyMetric")
            if not metric:
                continue
            dated_values = (series.get("timeSeries") or {}).get("datedValues") or []
            total = totals.get(metric, 0)
            for dv in dated_values:
                try:
                    value = int(dv.get("value") or 0)
                except (TypeError, ValueError):
                    value = 0
                # Out-of-range values are treated as missing
                if 0 <= value <= 1_000_000:
                    total += value
            totals[metric] = total
    return totals


class BusinessProfileClient:
    """
    Async business-data API client.

    Use as an async context manager, or call aclose() when done.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            access_token: OAuth bearer token for the caller.
            base_url: API root; resource names are appended to it.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (MockTransport in tests).
        """
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BusinessProfileClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._http.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransportTimeout(f"Request to {path} timed out") from exc
        except httpx.TransportError as exc:
            raise ConnectionFailure(f"Connection to {path} failed: {exc}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            raise ApiError(
                response.status_code,
                f"HTTP {response.status_code}: {message}",
                body=response.text,
            )
        if not response.content:
            return {}
        return response.json()

    async def _list(
        self,
        path: str,
        items_key: str,
        page_size: int,
        page_token: Optional[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Page:
        params: Dict[str, Any] = {"pageSize": page_size}
        if extra:
            params.update(extra)
        if page_token:
            params["pageToken"] = page_token
        payload = await self._get(path, params)
        return Page(
            items=list(payload.get(items_key) or []),
            next_page_token=payload.get("nextPageToken") or None,
        )

    # ─── List calls ──────────────────────────────────────────────────────────

    async def list_accounts(self, page_token: Optional[str] = None) -> Page:
        return await self._list("accounts", "accounts", ACCOUNTS_PAGE_SIZE, page_token)

    async def list_locations(self, account_ref: str, page_token: Optional[str] = None) -> Page:
        return await self._list(
            f"{account_ref}/locations", "locations", LOCATIONS_PAGE_SIZE, page_token,
            extra={"readMask": LOCATION_READ_MASK},
        )

    async def list_reviews(
        self, account_ref: str, location_ref: str, page_token: Optional[str] = None
    ) -> Page:
        return await self._list(
            f"{account_ref}/{location_ref}/reviews", "reviews", REVIEWS_PAGE_SIZE, page_token
        )

    async def list_posts(
        self, account_ref: str, location_ref: str, page_token: Optional[str] = None
    ) -> Page:
        return await self._list(
            f"{account_ref}/{location_ref}/localPosts", "localPosts", POSTS_PAGE_SIZE, page_token
        )

    async def list_search_keywords(
        self, location_ref: str, year: int, month: int, page_token: Optional[str] = None
    ) -> Page:
        """One month of search-keyword impressions; year/month are stamped on each item."""
        page = await self._list(
            f"{location_ref}/searchkeywords/impressions/monthly",
            "searchKeywordsCounts",
            KEYWORDS_PAGE_SIZE,
            page_token,
            extra={
                "monthlyRange.start_month.year": year,
                "monthlyRange.start_month.month": month,
                "monthlyRange.end_month.year": year,
                "monthlyRange.end_month.month": month,
            },
        )
        page.items = [dict(item, year=year, month=month) for item in page.items]
        return page

    # ─── Performance ─────────────────────────────────────────────────────────

    async def fetch_performance(
        self,
        location_ref: str,
        start: date,
        end: date,
        window_days: int,
        metrics: Optional[Sequence[str]] = None,
    ) -> Page:
        """
        Fetch daily metrics for [start, end] and aggregate them into one record.

        A 400 naming metrics the location does not support is compensated by
        dropping those metrics and retrying exactly once.

        Returns:
            Page with a single item: {periodStart, periodEnd, windowDays, metrics}.
        """
        requested = list(metrics or PERFORMANCE_METRICS.keys())
        try:
            payload = await self._fetch_daily_metrics(location_ref, requested, start, end)
        except UnsupportedFieldError as exc:
            remaining = [m for m in requested if m not in exc.field.split(",")]
            if not remaining:
                raise
            logger.warning(
                "Metrics %s unsupported for %s, retrying with %d metrics",
                exc.field, location_ref, len(remaining),
            )
            payload = await self._fetch_daily_metrics(location_ref, remaining, start, end)

        item = {
            "periodStart": start.isoformat(),
            "periodEnd": end.isoformat(),
            "windowDays": window_days,
            "metrics": aggregate_daily_metrics(payload),
        }
        return Page(items=[item])

    async def _fetch_daily_metrics(
        self, location_ref: str, metrics: List[str], start: date, end: date
    ) -> Dict[str, Any]:
        params: List[tuple] = [("dailyMetrics", m) for m in metrics]
        params += list(_date_params("dailyRange.start_date", start).items())
        params += list(_date_params("dailyRange.end_date", end).items())
        try:
            return await self._get(f"{location_ref}:fetchMultiDailyMetricsTimeSeries", params)
        except ApiError as exc:
            if exc.status != 400:
                raise
            unsupported = [m for m in metrics if m in exc.body]
            if not unsupported:
                raise
            raise UnsupportedFieldError(",".join(unsupported), str(exc), exc.body) from exc
