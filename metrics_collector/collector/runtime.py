"""
Collector Runtime

Drives one end-to-end collection run for a single source:

    connect -> schema bootstrap -> connectivity check -> fetch
            -> reconcile -> notify -> disconnect

The database connection is released on every exit path. Per-record
failures are counted and logged; anything else aborts the run, sends a
best-effort error notification and is re-raised as a CollectorError.
"""

import enum
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union

from sqlalchemy import Table

from metrics_collector.database.models import CORE_TABLES
from metrics_collector.errors import CollectorError, RecordError

from .reconcile import ReconcileOutcome, ReconciliationEngine

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 1000


class RunState(enum.Enum):
    """Lifecycle of a collection run"""
    IDLE = "idle"
    STARTING = "starting"
    CONNECTED = "connected"
    SCHEMA_READY = "schema_ready"
    CONNECTIVITY_CHECKED = "connectivity_checked"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RunOptions:
    """What the caller asks for."""
    start_date: Optional[Union[str, date]] = None
    end_date: Optional[Union[str, date]] = None
    manual_mode: bool = False
    force_override: bool = False


@dataclass
class RunStats:
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    errors: int = 0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CollectionRun:
    """State of one run. Owned by a single CollectorRuntime.run() call."""
    service_name: str
    start_date: Optional[str]
    end_date: Optional[str]
    manual_mode: bool = False
    force_override: bool = False
    stats: RunStats = field(default_factory=RunStats)

    def warn(self, message: str) -> None:
        logger.warning(f"[{self.service_name}] {message}")
        self.stats.warnings.append(message)


@dataclass
class RunContext:
    """Per-run collaborators handed to the adapter."""
    run: CollectionRun
    gateway: Any
    reconciler: ReconciliationEngine


class SourceAdapter(Protocol):
    """
    Source-specific primitives consumed by CollectorRuntime.

    One implementation per integration. The runtime binds a RunContext
    before check_connection() and unbinds it after the run.
    """

    service_name: str
    tables: Sequence[Table]
    schema_script: Optional[Path]

    def bind(self, context: Optional[RunContext]) -> None: ...

    async def check_connection(self) -> None: ...

    async def fetch(self, start_date: str, end_date: str) -> List[Any]: ...

    def validate(self, raw: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def business_key(self, record: Dict[str, Any]) -> str: ...

    def exists(self, record: Dict[str, Any]) -> bool: ...

    def insert(self, record: Dict[str, Any]) -> None: ...

    def update(self, record: Dict[str, Any]) -> None: ...


def _as_iso(value: Optional[Union[str, date]]) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return value.isoformat()


class CollectorRuntime:
    """
    Runs a SourceAdapter through the collection lifecycle.

    Usage:
        runtime = CollectorRuntime(adapter, PersistenceGateway(), notifier)
        stats = await runtime.run(RunOptions(start_date="2025-09-15", end_date="2025-09-15"))
    """

    def __init__(
        self,
        adapter: SourceAdapter,
        gateway,
        notifier=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapter = adapter
        self.gateway = gateway
        self.notifier = notifier
        self.state = RunState.IDLE
        self._clock = clock

    @property
    def service_name(self) -> str:
        return self.adapter.service_name

    def _transition(self, state: RunState) -> None:
        logger.debug(f"[{self.service_name}] {self.state.value} -> {state.value}")
        self.state = state

    async def run(self, options: RunOptions) -> RunStats:
        """
        Execute one collection run.

        Returns:
            RunStats for the run

        Raises:
            CollectorError: the run failed; .stats holds the partial stats
        """
        run = CollectionRun(
            service_name=self.service_name,
            start_date=_as_iso(options.start_date),
            end_date=_as_iso(options.end_date),
            manual_mode=options.manual_mode,
            force_override=options.force_override,
        )
        started = self._clock()
        reconciler: Optional[ReconciliationEngine] = None

        self._transition(RunState.STARTING)
        logger.info(
            f"Starting {self.service_name} collector: {run.start_date} - {run.end_date} "
            f"(manual={run.manual_mode}, force={run.force_override})"
        )
        await self._notify("notify_start", self.service_name)

        try:
            self.gateway.connect()
            self._transition(RunState.CONNECTED)

            self._bootstrap_schema()
            self._transition(RunState.SCHEMA_READY)

            reconciler = ReconciliationEngine(self.gateway)
            self.adapter.bind(RunContext(run=run, gateway=self.gateway, reconciler=reconciler))

            await self.adapter.check_connection()
            self._transition(RunState.CONNECTIVITY_CHECKED)

            self._transition(RunState.FETCHING)
            records = list(await self.adapter.fetch(run.start_date, run.end_date) or [])

            if not records:
                run.warn("No data received from API")
            else:
                self._transition(RunState.RECONCILING)
                self._save(records, run, reconciler)

            self._transition(RunState.COMPLETED)

        except Exception as e:
            self._transition(RunState.FAILED)
            run.stats.errors += 1
            duration = self._elapsed(started)

            error = e if isinstance(e, CollectorError) else CollectorError(
                f"{self.service_name} collector failed: {e}"
            )
            error.stats = run.stats.to_dict()

            logger.error(f"{self.service_name} collector failed after {duration}s: {e}")
            await self._notify("notify_error", self.service_name, error, duration)

            if error is e:
                raise
            raise error from e

        finally:
            self.adapter.bind(None)
            if reconciler is not None:
                reconciler.reset()
            self.gateway.disconnect()

        duration = self._elapsed(started)
        await self._notify("notify_success", self.service_name, run.stats, duration)
        logger.info(f"{self.service_name} collector completed in {duration}s: {run.stats.to_dict()}")
        return run.stats

    def _bootstrap_schema(self) -> None:
        """Create core and source tables, then apply the optional SQL script."""
        self.gateway.ensure_tables(list(CORE_TABLES) + list(self.adapter.tables or []))

        script_path = self.adapter.schema_script
        if script_path is not None and Path(script_path).exists():
            self.gateway.apply_schema(Path(script_path).read_text(encoding="utf-8"))
            logger.info(f"Database schema applied from {script_path}")

    def _save(self, records: List[Any], run: CollectionRun, reconciler: ReconciliationEngine) -> None:
        stats = run.stats
        logger.info(f"Processing {len(records)} records")

        for raw in records:
            if not isinstance(raw, dict):
                stats.errors += 1
                continue

            record = None
            try:
                record = self.adapter.validate(raw)
                if record is None:
                    stats.errors += 1
                    continue

                outcome = reconciler.apply(self.adapter, record, run.force_override)
                if outcome is ReconcileOutcome.SKIPPED:
                    continue
                if outcome is ReconcileOutcome.UPDATED:
                    stats.updated += 1
                else:
                    stats.inserted += 1

                stats.processed += 1
                if stats.processed % PROGRESS_LOG_EVERY == 0:
                    logger.info(f"Processed {stats.processed} records")

            except RecordError as e:
                stats.errors += 1
                logger.warning(
                    f"Skipping record {self._record_key(record or raw)}: {e} | "
                    f"record={json.dumps(raw, default=str, ensure_ascii=False)}"
                )

            except Exception as e:
                stats.errors += 1
                logger.error(
                    f"Error processing record {self._record_key(record or raw)}: {e} | "
                    f"record={json.dumps(raw, default=str, ensure_ascii=False)}"
                )

    def _record_key(self, record: Dict[str, Any]) -> str:
        try:
            return self.adapter.business_key(record)
        except Exception:
            return json.dumps(record, default=str, ensure_ascii=False)[:100]

    def _elapsed(self, started: float) -> int:
        return int(round(self._clock() - started))

    async def _notify(self, method: str, *args) -> None:
        """Best-effort notification; failures are logged and ignored."""
        if self.notifier is None:
            return
        try:
            await getattr(self.notifier, method)(*args)
        except Exception as e:
            logger.warning(f"Notification {method} failed for {self.service_name}: {e}")
