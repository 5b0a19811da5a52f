"""
Autopilot - Core Package
========================

Configuration, database, models, schemas and exceptions.
"""

from autopilot.core.config import settings
from autopilot.core.database import Base, get_db_session, init_db

__all__ = ["Base", "get_db_session", "init_db", "settings"]
