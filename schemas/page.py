"""
Pydantic schemas for one normalized page of upstream events
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Any, Union

Number = Union[int, float]


class RateLimitSnapshot(BaseModel):
    """
    Rate-limit headers of a single response.

    Ephemeral: consumed for pacing in the same iteration, never persisted.
    ``remaining`` is 0 when the upstream did not send the header.
    """
    limit: Optional[Number] = None
    remaining: Optional[Number] = 0
    reset_seconds: Optional[Number] = None
    retry_after_seconds: Optional[Number] = None


class PageResult(BaseModel):
    """
    Normalized view of one upstream page.

    The upstream envelope has no fixed schema; everything past
    ingestion.extractors.envelope only sees this shape.
    """
    events: List[Any] = Field(default_factory=list)  # order preserved
    next_cursor: Optional[str] = None
    has_more: Optional[bool] = None  # None means the upstream did not say
    total: Optional[Number] = None
    cursor_expires_in: Optional[Number] = None
    rate_limit: RateLimitSnapshot = Field(default_factory=RateLimitSnapshot)
