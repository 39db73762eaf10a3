"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobqueue.db.connection import (
    close_db,
    create_schema,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
)
from jobqueue.db.models import Base, JobRecord

__all__ = [
    "get_engine",
    "get_session_factory",
    "create_session_factory",
    "create_schema",
    "init_db",
    "close_db",
    "JobRecord",
    "Base",
]
