"""
Reconciliation Engine

Maps fetched rows onto stored rows:
- Dimension keys (e.g. project + region) -> surrogate ids
- Text blobs (e.g. snippets) -> deduplicated content ids
- Insert vs. update vs. skip, based on the record's business key

Caches are per engine instance; one engine is created per collection run
and discarded with it. Correctness never depends on the caches: storage
uniqueness constraints plus conflict-safe upserts make concurrent runs
converge on a single row per key.
"""

import enum
import hashlib
import logging
from typing import Callable, Dict, Optional, Sequence, Set, Tuple, Union

from sqlalchemy import select, update

from metrics_collector.database.models import ContentBlob, DimensionMapping
from metrics_collector.errors import DimensionMappingError, PersistenceError

logger = logging.getLogger(__name__)

EMPTY_CONTENT_ID = 0

DimensionKey = Union[str, Sequence[str]]
Labeler = Callable[[Tuple[str, ...]], Optional[str]]


class ReconcileOutcome(enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


def content_digest(content: str) -> str:
    """SHA-256 hex digest (64 chars) of the UTF-8 content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _key_parts(key: DimensionKey) -> Tuple[str, ...]:
    if isinstance(key, str):
        return (key,)
    return tuple(str(part) for part in key)


class ReconciliationEngine:
    """
    Write-through dimension and content caches plus existence-aware upsert.

    Usage:
        engine = ReconciliationEngine(gateway)
        engine.register_dimension("topvisor.project_region", labeler)

        dimension_id = engine.resolve_dimension("topvisor.project_region", ("7063718", "159"))
        snippet_id = engine.resolve_content(snippet)
        outcome = engine.apply(adapter, record, force_override=False)
    """

    def __init__(self, gateway):
        self.gateway = gateway
        self._labelers: Dict[str, Optional[Labeler]] = {}
        self._dimensions: Dict[Tuple[str, str], int] = {}
        self._contents: Dict[str, int] = {}
        self._inserted_keys: Set[str] = set()
        self._stats = {
            "dimension_hits": 0,
            "dimension_misses": 0,
            "content_hits": 0,
            "content_misses": 0,
        }

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        """Drop every cached mapping."""
        self._dimensions.clear()
        self._contents.clear()
        self._inserted_keys.clear()

    # =========================================================================
    # DIMENSIONS
    # =========================================================================

    def register_dimension(self, namespace: str, labeler: Optional[Labeler] = None) -> None:
        """
        Declare a dimension namespace.

        labeler(key_parts) returns a display label for a key, or None if the
        key is not configured. Without a labeler every key is accepted and
        labelled with its joined parts.
        """
        self._labelers[namespace] = labeler

    def resolve_dimension(self, namespace: str, key: DimensionKey) -> int:
        """
        Return the surrogate id for a composite key.

        Raises:
            DimensionMappingError: the key is neither stored nor configured
        """
        parts = _key_parts(key)
        external_key = ":".join(parts)
        cache_key = (namespace, external_key)

        cached = self._dimensions.get(cache_key)
        if cached is not None:
            self._stats["dimension_hits"] += 1
            return cached

        self._stats["dimension_misses"] += 1
        dimension_id = self._lookup_dimension(namespace, external_key)

        if dimension_id is None:
            labeler = self._labelers.get(namespace)
            label = labeler(parts) if labeler else external_key
            if label is None:
                raise DimensionMappingError(namespace, external_key)

            stmt = (
                self.gateway.insert(DimensionMapping.__table__)
                .values(namespace=namespace, external_key=external_key, label=label)
                .on_conflict_do_nothing(index_elements=["namespace", "external_key"])
            )
            self.gateway.execute(stmt)

            # Re-read: if a concurrent run won the insert we get its id
            dimension_id = self._lookup_dimension(namespace, external_key)
            if dimension_id is None:
                raise PersistenceError(f"Dimension upsert returned no row for {namespace}:{external_key}")
            logger.debug(f"New dimension {namespace}:{external_key} -> {dimension_id} ({label})")

        self._dimensions[cache_key] = dimension_id
        return dimension_id

    def _lookup_dimension(self, namespace: str, external_key: str) -> Optional[int]:
        return self.gateway.scalar(
            select(DimensionMapping.id).where(
                DimensionMapping.namespace == namespace,
                DimensionMapping.external_key == external_key,
            )
        )

    # =========================================================================
    # CONTENT
    # =========================================================================

    def resolve_content(self, content: Optional[str]) -> int:
        """
        Return the surrogate id for a text blob, bumping its usage counter.

        Empty or whitespace-only content maps to EMPTY_CONTENT_ID without
        hashing or touching storage.
        """
        if content is None or not content.strip():
            return EMPTY_CONTENT_ID

        digest = content_digest(content)
        table = ContentBlob.__table__

        content_id = self._contents.get(digest)
        if content_id is None:
            content_id = self.gateway.scalar(select(ContentBlob.id).where(ContentBlob.digest == digest))

        if content_id is not None:
            self._stats["content_hits"] += 1
            self.gateway.execute(
                update(table)
                .where(table.c.id == content_id)
                .values(usage_count=table.c.usage_count + 1)
            )
            self._contents[digest] = content_id
            return content_id

        self._stats["content_misses"] += 1
        stmt = self.gateway.insert(table).values(digest=digest, content=content, usage_count=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=["digest"],
            set_={"usage_count": table.c.usage_count + stmt.excluded.usage_count},
        ).returning(table.c.id)

        content_id = self.gateway.scalar(stmt)
        if content_id is None:
            raise PersistenceError(f"Content upsert returned no row for digest {digest}")

        self._contents[digest] = content_id
        return content_id

    # =========================================================================
    # UPSERT
    # =========================================================================

    def apply(self, adapter, record: Dict, force_override: bool = False) -> ReconcileOutcome:
        """Insert, update or skip one normalized record."""
        key = adapter.business_key(record)
        exists = key in self._inserted_keys or adapter.exists(record)

        if exists and not force_override:
            logger.debug(f"Record already exists, skipping: {key}")
            return ReconcileOutcome.SKIPPED

        if exists:
            adapter.update(record)
            return ReconcileOutcome.UPDATED

        adapter.insert(record)
        self._inserted_keys.add(key)
        return ReconcileOutcome.INSERTED
