"""
Database module.
Contains database connection, models, and repository implementations.
"""

from orchestrator.db.connection import (
    close_db,
    create_schema,
    create_session_factory,
    get_engine,
    init_db,
)
from orchestrator.db.models import Base, Job

__all__ = [
    "create_session_factory",
    "create_schema",
    "get_engine",
    "init_db",
    "close_db",
    "Job",
    "Base",
]
