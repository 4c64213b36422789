from sqlalchemy import Column, Text, DateTime, Index, func
from models.base import Base, JSONPayload


class Event(Base):
    """
    Append-only store of upstream events.

    Design:
    - id is the upstream event id and the only deduplication key
    - raw keeps the full upstream payload untouched
    - rows are never updated; inserts use ON CONFLICT (id) DO NOTHING
    """
    __tablename__ = "events"

    id = Column(Text, primary_key=True)
    raw = Column(JSONPayload, nullable=False)
    ingested_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_events_ingested_at", "ingested_at"),
    )
