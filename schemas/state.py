"""
Pydantic schemas for checkpoint state and mapped events
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any


class CheckpointState(BaseModel):
    """Committed resume point as read from ingestion_state."""
    cursor: Optional[str] = None
    page: int = Field(0, ge=0)
    ingested_count: int = Field(0, ge=0)
    last_ts_ms: Optional[int] = None

    class Config:
        from_attributes = True


class MappedEvent(BaseModel):
    """An upstream event with a usable string id, ready for insertion."""
    id: str = Field(..., min_length=1)
    raw: Dict[str, Any]
