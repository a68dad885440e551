"""
Google Search Console collector.

OAuth-protected: every request goes through TokenManager, which refreshes
the access token when needed and retries once on a 401. One search
analytics query is issued per day so large ranges stay under the API row
limit, and the queries are executed through BatchFetcher.
"""

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from sqlalchemy import func, insert, select, update

from metrics_collector.auth import RefreshTokenStore, TokenManager
from metrics_collector.collector import BatchFetcher, RequestDescriptor, RetryPolicy, RunContext
from metrics_collector.database.models import SearchConsoleRow
from metrics_collector.errors import (
    APIError,
    AuthError,
    AuthErrorKind,
    ConfigError,
    ConnectivityError,
    RecordError,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "gsc"
DIMENSION = "gsc.site_page"
API_ENDPOINT = "https://www.googleapis.com/webmasters/v3"
QUERY_DIMENSIONS = ["date", "query", "page"]


def date_range(start_date: str, end_date: str) -> List[str]:
    """Inclusive list of ISO dates."""
    start = date.fromisoformat(start_date)
    end = date.fromisoformat(end_date)
    if end < start:
        raise ConfigError(f"End date {end_date} is before start date {start_date}")
    return [(start + timedelta(days=i)).isoformat() for i in range((end - start).days + 1)]


class GSCAdapter:
    """SourceAdapter for Search Console search analytics."""

    service_name = SERVICE_NAME
    tables = [SearchConsoleRow.__table__]

    def __init__(
        self,
        settings,
        token_manager: Optional[TokenManager] = None,
        fetcher: Optional[BatchFetcher] = None,
        schema_script: Optional[Path] = None,
    ):
        if token_manager is None:
            settings.require("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "GSC_SITE_URL")
            token_manager = TokenManager(
                settings.GOOGLE_CLIENT_ID,
                settings.GOOGLE_CLIENT_SECRET,
                RefreshTokenStore(settings.GOOGLE_REFRESH_TOKEN_PATH),
                force_refresh=settings.GOOGLE_TOKEN_FORCE_REFRESH,
                timeout=settings.API_TIMEOUT,
            )
        else:
            settings.require("GSC_SITE_URL")

        self.token_manager = token_manager
        self.site_url = settings.GSC_SITE_URL
        self.row_limit = settings.GSC_ROW_LIMIT
        self.refresh_on_start = settings.GOOGLE_TOKEN_REFRESH_ON_START
        self.schema_script = schema_script
        self.fetcher = fetcher or BatchFetcher(
            batch_size=settings.FETCH_BATCH_SIZE,
            batch_delay=settings.FETCH_BATCH_DELAY,
            retry_policy=RetryPolicy(max_attempts=settings.FETCH_MAX_ATTEMPTS),
        )
        self._context: Optional[RunContext] = None

    def bind(self, context: Optional[RunContext]) -> None:
        self._context = context
        if context is not None:
            context.reconciler.register_dimension(DIMENSION)

    @property
    def context(self) -> RunContext:
        if self._context is None:
            raise RuntimeError("Adapter is not bound to a run")
        return self._context

    async def check_connection(self) -> None:
        logger.info("Checking Search Console API connection")

        if not self.token_manager.store.exists():
            raise AuthError(
                AuthErrorKind.MISSING_REFRESH_TOKEN,
                "Google authorization required: run `metrics-collector authorize`",
            )

        if self.refresh_on_start:
            logger.info("Refreshing access token before start...")
            await self.token_manager.refresh()

        try:
            await self.token_manager.request("GET", f"{API_ENDPOINT}/sites", timeout=10.0)
        except APIError as e:
            raise ConnectivityError(f"Search Console API unavailable: {e}") from e
        logger.info("Search Console API connection OK")

    def build_requests(self, start_date: str, end_date: str) -> List[RequestDescriptor]:
        url = f"{API_ENDPOINT}/sites/{quote(self.site_url, safe='')}/searchAnalytics/query"
        return [
            RequestDescriptor(
                name=f"Search analytics {day}",
                url=url,
                json={
                    "startDate": day,
                    "endDate": day,
                    "type": "web",
                    "dimensions": QUERY_DIMENSIONS,
                    "rowLimit": self.row_limit,
                },
            )
            for day in date_range(start_date, end_date)
        ]

    async def fetch(self, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        logger.info(f"Fetching Search Console data for {start_date} - {end_date}")

        outcomes = await self.fetcher.fetch_all(
            self.build_requests(start_date, end_date),
            self.token_manager.send,
        )

        rows: List[Dict[str, Any]] = []
        for outcome in outcomes:
            if not outcome.success:
                logger.error(f"Request '{outcome.descriptor.name}' failed: {outcome.error}")
                self.context.run.stats.errors += 1
                continue
            rows.extend((outcome.data or {}).get("rows") or [])

        logger.info(f"Received {len(rows)} rows from Search Console")
        return rows

    def validate(self, raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        keys = raw.get("keys")
        if not isinstance(keys, list) or len(keys) != len(QUERY_DIMENSIONS):
            return None

        day, query, page = keys
        if not query or not page:
            return None

        try:
            event_date = date.fromisoformat(day)
        except (TypeError, ValueError):
            raise RecordError(f"Malformed date {day!r}")

        try:
            return {
                "event_date": event_date,
                "request": query,
                "target_url": self.context.reconciler.resolve_dimension(DIMENSION, page),
                "clicks": int(raw.get("clicks") or 0),
                "impressions": int(raw.get("impressions") or 0),
                "ctr": float(raw.get("ctr") or 0.0),
                "position": float(raw["position"]) if raw.get("position") is not None else None,
            }
        except (TypeError, ValueError) as e:
            raise RecordError(f"Invalid metric value: {e}")

    def business_key(self, record: Dict[str, Any]) -> str:
        return f"{record['event_date']}|{record['request']}|{record['target_url']}"

    def _matches(self, record: Dict[str, Any]):
        return (
            SearchConsoleRow.event_date == record["event_date"],
            SearchConsoleRow.request == record["request"],
            SearchConsoleRow.target_url == record["target_url"],
        )

    def exists(self, record: Dict[str, Any]) -> bool:
        found = self.context.gateway.scalar(select(SearchConsoleRow.id).where(*self._matches(record)))
        return found is not None

    def insert(self, record: Dict[str, Any]) -> None:
        self.context.gateway.execute(insert(SearchConsoleRow.__table__).values(**record))

    def update(self, record: Dict[str, Any]) -> None:
        self.context.gateway.execute(
            update(SearchConsoleRow.__table__)
            .where(*self._matches(record))
            .values(
                clicks=record["clicks"],
                impressions=record["impressions"],
                ctr=record["ctr"],
                position=record["position"],
                updated_at=datetime.utcnow(),
            )
        )

    def summarize(self, gateway, start_date: date, end_date: date) -> Dict[str, Any]:
        row = gateway.execute(
            select(
                func.count(SearchConsoleRow.id),
                func.count(func.distinct(SearchConsoleRow.request)),
                func.count(func.distinct(SearchConsoleRow.target_url)),
                func.sum(SearchConsoleRow.clicks),
                func.sum(SearchConsoleRow.impressions),
                func.min(SearchConsoleRow.event_date),
                func.max(SearchConsoleRow.event_date),
            ).where(SearchConsoleRow.event_date.between(start_date, end_date))
        )[0]
        return {
            "service": self.service_name,
            "period": {"start_date": str(start_date), "end_date": str(end_date)},
            "total_records": row[0],
            "unique_queries": row[1],
            "unique_urls": row[2],
            "total_clicks": row[3] or 0,
            "total_impressions": row[4] or 0,
            "first_date": row[5],
            "last_date": row[6],
        }

    async def close(self) -> None:
        await self.token_manager.close()
