from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")
