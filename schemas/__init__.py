"""
Pydantic schemas for the normalized types passed between components.

Schemas:
    page: PageResult and RateLimitSnapshot produced by the page fetcher
    state: CheckpointState read from the checkpoint store, MappedEvent
        written to the event store

Usage:
    from schemas.page import PageResult, RateLimitSnapshot
    from schemas.state import CheckpointState, MappedEvent
"""

from schemas.page import PageResult, RateLimitSnapshot
from schemas.state import CheckpointState, MappedEvent

__all__ = [
    "PageResult",
    "RateLimitSnapshot",
    "CheckpointState",
    "MappedEvent",
]
