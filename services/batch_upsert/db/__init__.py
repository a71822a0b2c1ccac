"""
Database connectivity module for the batch upsert engine.

This module provides database connectivity with upsert capabilities
using SQLAlchemy 2.x and psycopg3.
"""

from .connector import get_engine, normalize_dsn, set_lock_timeout, upsert

__all__ = ["get_engine", "normalize_dsn", "set_lock_timeout", "upsert"]
