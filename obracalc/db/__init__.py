"""Database layer for ObraCalc with async SQLAlchemy."""

from obracalc.db.connection import Database
from obracalc.db.models import Base, CatalogRecordModel, IngestionJobModel

__all__ = [
    "Base",
    "CatalogRecordModel",
    "IngestionJobModel",
    "Database",
]
