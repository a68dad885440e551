"""
Metrics Database Layer

Usage:
    from metrics_collector.database import PersistenceGateway, TopVisorPosition

    gateway = PersistenceGateway()
    gateway.connect()
    gateway.ensure_tables([TopVisorPosition.__table__])
"""

from .models import (
    Base,
    DimensionMapping,
    ContentBlob,
    TopVisorPosition,
    SearchConsoleRow,
    CORE_TABLES,
)
from .session import (
    PersistenceGateway,
    create_db_engine,
    get_database_url,
)

__all__ = [
    # Models
    "Base",
    "DimensionMapping",
    "ContentBlob",
    "TopVisorPosition",
    "SearchConsoleRow",
    "CORE_TABLES",
    # Gateway
    "PersistenceGateway",
    "create_db_engine",
    "get_database_url",
]
