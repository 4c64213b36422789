from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# JSONB on PostgreSQL, generic JSON elsewhere (tests run on SQLite)
JSONPayload = JSON().with_variant(JSONB(), "postgresql")

# ingestion_state is a singleton keyed by this id
STATE_ROW_ID = 1
