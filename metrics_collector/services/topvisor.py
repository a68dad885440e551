"""
TopVisor rank-tracker collector.

Pulls daily search positions for every configured (project, search engine)
pair. Requests are batched 4 at a time because the API allows at most
5 concurrent requests per second.
"""

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import func, insert, select, update

from metrics_collector.collector import (
    ApiClient,
    BatchFetcher,
    RequestDescriptor,
    RetryPolicy,
    RunContext,
)
from metrics_collector.database.models import TopVisorPosition
from metrics_collector.errors import APIError, ConnectivityError, RecordError

logger = logging.getLogger(__name__)

SERVICE_NAME = "topvisor"
DIMENSION = "topvisor.project_region"
NOT_RANKED = "--"
POSITION_FIELDS = ["relevant_url", "position", "snippet"]

DEFAULT_PROJECTS = {
    "11430357": "Terms",
    "7093082": "Blog",
    "7063718": "DDG-EN",
    "7063822": "DDG-RU",
}

# region index -> search engine
DEFAULT_SEARCH_ENGINES = {
    "7": "Google",
    "5": "Yandex",
    "159": "Google",
    "701": "Bing",
}

DEFAULT_TARGETS: List[Tuple[str, str]] = [
    ("7063822", "5"),
    ("7063822", "7"),
    ("7063718", "159"),
    ("7063718", "701"),
    ("7093082", "5"),
    ("7093082", "7"),
    ("11430357", "5"),
    ("11430357", "7"),
]


def explode_keywords(payload: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """
    Flatten an API response into one raw row per (keyword, position entry).

    Position entries are keyed "<date>:<project_id>:<region_index>".
    """
    result = (payload or {}).get("result") or {}
    for keyword in result.get("keywords") or []:
        positions = keyword.get("positionsData") or {}
        for key, entry in positions.items():
            yield {"keywordName": keyword.get("name"), "positionData": {key: entry}}


def parse_position(value: Any) -> Optional[int]:
    """'--' (not ranked), None and '' become None."""
    if value is None or value == "" or value == NOT_RANKED:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RecordError(f"Invalid position value {value!r}")


class TopVisorAdapter:
    """SourceAdapter for TopVisor positions history."""

    service_name = SERVICE_NAME
    tables = [TopVisorPosition.__table__]

    def __init__(
        self,
        settings,
        projects: Optional[Dict[str, str]] = None,
        search_engines: Optional[Dict[str, str]] = None,
        targets: Optional[Sequence[Tuple[str, str]]] = None,
        client: Optional[ApiClient] = None,
        fetcher: Optional[BatchFetcher] = None,
        schema_script: Optional[Path] = None,
    ):
        settings.require("TOPVISOR_API_URL", "TOPVISOR_API_KEY", "TOPVISOR_USER_ID")

        self.api_url = settings.TOPVISOR_API_URL
        self.projects = dict(projects or DEFAULT_PROJECTS)
        self.search_engines = dict(search_engines or DEFAULT_SEARCH_ENGINES)
        self.targets = list(targets or DEFAULT_TARGETS)
        self.schema_script = schema_script

        self.client = client or ApiClient(
            headers={
                "Authorization": f"Bearer {settings.TOPVISOR_API_KEY}",
                "User-Id": str(settings.TOPVISOR_USER_ID),
            },
            timeout=settings.API_TIMEOUT,
        )
        self.fetcher = fetcher or BatchFetcher(
            batch_size=settings.FETCH_BATCH_SIZE,
            batch_delay=settings.FETCH_BATCH_DELAY,
            retry_policy=RetryPolicy(max_attempts=settings.FETCH_MAX_ATTEMPTS),
        )
        self._context: Optional[RunContext] = None

    # -------------------------------------------------------------------------
    # Run binding
    # -------------------------------------------------------------------------

    def bind(self, context: Optional[RunContext]) -> None:
        self._context = context
        if context is not None:
            context.reconciler.register_dimension(DIMENSION, self._label)

    @property
    def context(self) -> RunContext:
        if self._context is None:
            raise RuntimeError("Adapter is not bound to a run")
        return self._context

    def _label(self, parts: Tuple[str, ...]) -> Optional[str]:
        if len(parts) != 2:
            return None
        project_id, region_index = parts
        if project_id not in self.projects or region_index not in self.search_engines:
            return None
        return f"{self.projects[project_id]} / {self.search_engines[region_index]}"

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    async def check_connection(self) -> None:
        logger.info("Checking TopVisor API connection")
        try:
            await self.client.request("POST", self.api_url, json={"show": "info"}, timeout=10.0)
        except APIError as e:
            raise ConnectivityError(f"TopVisor API unavailable: {e}") from e
        logger.info("TopVisor API connection OK")

    def build_requests(self, start_date: str, end_date: str) -> List[RequestDescriptor]:
        descriptors = []
        for project_id, region_index in self.targets:
            project = self.projects.get(project_id, project_id)
            engine = self.search_engines.get(region_index, region_index)
            descriptors.append(RequestDescriptor(
                name=f"Positions: {project} / {engine}",
                url=self.api_url,
                json={
                    "project_id": project_id,
                    "regions_indexes": [region_index],
                    "date1": start_date,
                    "date2": end_date,
                    "positions_fields": POSITION_FIELDS,
                    "show_groups": True,
                },
            ))
        return descriptors

    async def fetch(self, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        logger.info(f"Fetching TopVisor positions for {start_date} - {end_date}")

        outcomes = await self.fetcher.fetch_all(
            self.build_requests(start_date, end_date),
            self.client.send,
        )

        rows: List[Dict[str, Any]] = []
        for outcome in outcomes:
            if not outcome.success:
                logger.error(f"Request '{outcome.descriptor.name}' failed: {outcome.error}")
                self.context.run.stats.errors += 1
                continue

            exploded = list(explode_keywords(outcome.data))
            if not exploded:
                logger.warning(f"Empty result for '{outcome.descriptor.name}'")
            rows.extend(exploded)

        logger.info(f"Received {len(rows)} position rows from API")
        return rows

    # -------------------------------------------------------------------------
    # Save
    # -------------------------------------------------------------------------

    def validate(self, raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        request = raw.get("keywordName")
        positions = raw.get("positionData")
        if not request or not isinstance(positions, dict) or len(positions) != 1:
            return None

        (key, entry), = positions.items()
        if not isinstance(entry, dict):
            return None

        parts = str(key).split(":")
        if len(parts) != 3:
            raise RecordError(f"Malformed position key {key!r}")
        event_date, project_id, region_index = parts

        try:
            event_date = date.fromisoformat(event_date)
        except ValueError:
            raise RecordError(f"Malformed date in position key {key!r}")

        reconciler = self.context.reconciler
        return {
            "request": request,
            "event_date": event_date,
            "dimension_id": reconciler.resolve_dimension(DIMENSION, (project_id, region_index)),
            "position": parse_position(entry.get("position")),
            "relevant_url": entry.get("relevant_url") or "",
            "snippet_id": reconciler.resolve_content(entry.get("snippet") or ""),
        }

    def business_key(self, record: Dict[str, Any]) -> str:
        return f"{record['request']}|{record['event_date']}|{record['dimension_id']}"

    def _matches(self, record: Dict[str, Any]):
        return (
            TopVisorPosition.request == record["request"],
            TopVisorPosition.event_date == record["event_date"],
            TopVisorPosition.dimension_id == record["dimension_id"],
        )

    def exists(self, record: Dict[str, Any]) -> bool:
        found = self.context.gateway.scalar(select(TopVisorPosition.id).where(*self._matches(record)))
        return found is not None

    def insert(self, record: Dict[str, Any]) -> None:
        self.context.gateway.execute(insert(TopVisorPosition.__table__).values(**record))

    def update(self, record: Dict[str, Any]) -> None:
        self.context.gateway.execute(
            update(TopVisorPosition.__table__)
            .where(*self._matches(record))
            .values(
                position=record["position"],
                relevant_url=record["relevant_url"],
                snippet_id=record["snippet_id"],
                updated_at=datetime.utcnow(),
            )
        )

    def summarize(self, gateway, start_date: date, end_date: date) -> Dict[str, Any]:
        """Row counts over a date range."""
        row = gateway.execute(
            select(
                func.count(TopVisorPosition.id),
                func.count(func.distinct(TopVisorPosition.dimension_id)),
                func.min(TopVisorPosition.event_date),
                func.max(TopVisorPosition.event_date),
            ).where(TopVisorPosition.event_date.between(start_date, end_date))
        )[0]
        return {
            "service": self.service_name,
            "period": {"start_date": str(start_date), "end_date": str(end_date)},
            "total_records": row[0],
            "dimensions": row[1],
            "first_date": row[2],
            "last_date": row[3],
        }

    async def close(self) -> None:
        await self.client.close()
