"""Storage module for oidcrp.

Provides SQLAlchemy-backed persistence for pending authorization states.
"""

from oidcrp.storage.database import (
    Database,
    DatabaseError,
    create_database_engine,
)
from oidcrp.storage.models import AuthStateRecord, Base
from oidcrp.storage.state_store import SQLStateStore

__all__ = [
    # Database management
    "Database",
    "DatabaseError",
    "create_database_engine",
    # Models
    "Base",
    "AuthStateRecord",
    # State store
    "SQLStateStore",
]
