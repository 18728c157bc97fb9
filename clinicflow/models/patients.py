"""Patient directory table using SQLAlchemy Core."""

from sqlalchemy import Column, String, Table, Text, func

from clinicflow.models.base import UTCDateTime, metadata

patients = Table(
    "patients",
    metadata,
    Column("id", String(100), primary_key=True),
    Column("name", Text, nullable=False),
    Column("email", String(255)),
    Column("phone", String(20)),
    Column("created_at", UTCDateTime, nullable=False, server_default=func.now()),
)
