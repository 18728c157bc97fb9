"""Doctor directory table using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    Column,
    Numeric,
    String,
    Table,
    Text,
    func,
    true,
)

from clinicflow.models.base import JSONType, UTCDateTime, metadata

doctors = Table(
    "doctors",
    metadata,
    Column("id", String(100), primary_key=True),
    Column("name", Text, nullable=False),
    Column("specialization", String(200), index=True),
    Column("consultation_fee", Numeric(10, 2)),
    # Weekly availability, e.g. {"monday": [{"start": "09:00", "end": "17:00"}]}
    Column("working_hours", JSONType),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", UTCDateTime, nullable=False, server_default=func.now()),
)
