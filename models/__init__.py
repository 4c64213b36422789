"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared column types
    event: Append-only event store keyed by upstream id
    checkpoint: Singleton resume point for the ingestion loop

Database Schema:
    Both models inherit from the Base declarative class. The raw payload
    uses PostgreSQL JSONB, falling back to generic JSON on other dialects.

Usage:
    from models import Event, IngestionState
    from models.base import STATE_ROW_ID
"""

from models.base import Base, STATE_ROW_ID
from models.event import Event
from models.checkpoint import IngestionState

__all__ = [
    "Base",
    "STATE_ROW_ID",
    "Event",
    "IngestionState",
]
