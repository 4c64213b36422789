from sqlalchemy import Column, Integer, BigInteger, Text, DateTime, func
from models.base import Base


class IngestionState(Base):
    """
    Resume point of the ingestion loop.

    Purpose:
    - Resume pagination from the last committed cursor
    - Track the running total of inserted rows
    - Track the high-water event timestamp (ms)

    Design:
    - Exactly one row (id = STATE_ROW_ID), seeded at schema creation
    - Updated in the same transaction as the events it accounts for
    - Never deleted
    """
    __tablename__ = "ingestion_state"

    id = Column(Integer, primary_key=True, autoincrement=False)

    cursor = Column(Text, nullable=True)  # null means "start from the beginning"
    page = Column(Integer, nullable=False, default=0, server_default="0")
    ingested_count = Column(BigInteger, nullable=False, default=0, server_default="0")
    last_ts_ms = Column(BigInteger, nullable=True)

    updated_at = Column(DateTime, nullable=False, server_default=func.now())
