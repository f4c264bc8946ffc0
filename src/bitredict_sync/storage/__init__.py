"""Storage layer - Database schemas, repositories and the event store."""

from bitredict_sync.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    normalize_async_database_url,
)
from bitredict_sync.storage.models import Base
from bitredict_sync.storage.persistence import (
    EntityNotFoundError,
    EventStore,
    PersistenceError,
    ReputationChange,
)
from bitredict_sync.storage.repos import (
    BetDTO,
    CycleDTO,
    NotificationDTO,
    PoolDTO,
    SlipDTO,
)

__all__ = [
    "Base",
    "BetDTO",
    "CycleDTO",
    "DatabaseManager",
    "EntityNotFoundError",
    "EventStore",
    "NotificationDTO",
    "PersistenceError",
    "PoolDTO",
    "ReputationChange",
    "SlipDTO",
    "create_async_db_engine",
    "normalize_async_database_url",
]
