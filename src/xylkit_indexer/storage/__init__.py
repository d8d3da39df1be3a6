"""Storage layer - Database schemas and repositories."""

from xylkit_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from xylkit_indexer.storage.models import (
    AccountModel,
    Base,
    DeploymentModel,
    EventModel,
    SplitModel,
    StreamModel,
    SyncCursorModel,
    SyncMetadataModel,
    TokenModel,
)
from xylkit_indexer.storage.repos import (
    STREAM_KIND_TRANSACTIONS,
    STREAM_KIND_USER_DISCOVERY,
    AccountDTO,
    AccountRepository,
    DeploymentDTO,
    DeploymentRepository,
    EventDTO,
    EventRepository,
    SplitDTO,
    SplitRepository,
    StreamDTO,
    StreamRepository,
    SyncCursorRepository,
    SyncMetadataDTO,
    SyncMetadataRepository,
    TokenDTO,
    TokenRepository,
)

__all__ = [
    "STREAM_KIND_TRANSACTIONS",
    "STREAM_KIND_USER_DISCOVERY",
    "AccountDTO",
    "AccountModel",
    "AccountRepository",
    "Base",
    "DatabaseManager",
    "DeploymentDTO",
    "DeploymentModel",
    "DeploymentRepository",
    "EventDTO",
    "EventModel",
    "EventRepository",
    "SplitDTO",
    "SplitModel",
    "SplitRepository",
    "StreamDTO",
    "StreamModel",
    "StreamRepository",
    "SyncCursorModel",
    "SyncCursorRepository",
    "SyncMetadataDTO",
    "SyncMetadataModel",
    "SyncMetadataRepository",
    "TokenDTO",
    "TokenModel",
    "TokenRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
