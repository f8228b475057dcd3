"""Database module for hwmgr persistence."""

from hwmgr.db.engine import close_db, get_session, init_db
from hwmgr.db.models import ConfigRecord, NodePoolRecord, NodeRecord, StoredObject

__all__ = [
    "close_db",
    "get_session",
    "init_db",
    "ConfigRecord",
    "NodePoolRecord",
    "NodeRecord",
    "StoredObject",
]
