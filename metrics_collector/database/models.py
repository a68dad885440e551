"""
SQLAlchemy Models for the metrics store

Two kinds of tables:
1. Dimensions - surrogate ids for external composite keys and text blobs,
   each protected by a uniqueness constraint so concurrent upserts converge
2. Facts - one table per source, unique on the record's business key
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Float, Date, DateTime, Text,
    Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


# =============================================================================
# DIMENSIONS
# =============================================================================

class DimensionMapping(Base):
    """External composite key -> surrogate id, per namespace."""
    __tablename__ = "dimension_map"

    id = Column(Integer, primary_key=True, autoincrement=True)
    namespace = Column(String(100), nullable=False)
    external_key = Column(String(1000), nullable=False)
    label = Column(String(255))

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("namespace", "external_key", name="uq_dimension_namespace_key"),
    )


class ContentBlob(Base):
    """Deduplicated text content keyed by its SHA-256 digest."""
    __tablename__ = "content_blobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    digest = Column(String(64), nullable=False, unique=True)
    content = Column(Text, nullable=False)
    usage_count = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# FACTS
# =============================================================================

class TopVisorPosition(Base):
    """Daily search position of a tracked request in one project/engine."""
    __tablename__ = "topvisor_positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request = Column(Text, nullable=False)
    event_date = Column(Date, nullable=False)
    dimension_id = Column(Integer, nullable=False)  # dimension_map: project + region

    position = Column(Integer)  # NULL = not ranked
    relevant_url = Column(Text, default="")
    snippet_id = Column(Integer, nullable=False, default=0)  # content_blobs

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("request", "event_date", "dimension_id", name="uq_topvisor_business_key"),
        Index("idx_topvisor_event_date", "event_date"),
    )


class SearchConsoleRow(Base):
    """Search analytics for one (date, query, page)."""
    __tablename__ = "gsc_search_console"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_date = Column(Date, nullable=False)
    request = Column(Text, nullable=False)
    target_url = Column(Integer, nullable=False)  # dimension_map: site page

    clicks = Column(Integer, default=0)
    impressions = Column(Integer, default=0)
    ctr = Column(Float, default=0.0)
    position = Column(Float)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("event_date", "request", "target_url", name="uq_gsc_business_key"),
        Index("idx_gsc_event_date", "event_date"),
    )


CORE_TABLES = [DimensionMapping.__table__, ContentBlob.__table__]
