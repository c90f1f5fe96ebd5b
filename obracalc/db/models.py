"""SQLAlchemy async database models for ObraCalc.

PostgreSQL with pgvector in production; the embedding column falls back
to JSON on SQLite so the same models run in development and tests.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

# Must match VectorConfig.index_dimension; the HNSW index is built for this size.
INDEX_DIMENSION = 768


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class CatalogRecordModel(Base):
    """Priced work item or material extracted from a price book."""

    __tablename__ = "catalog_records"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64))

    description: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="work")
    chapter: Mapped[str | None] = mapped_column(Text)
    section: Mapped[str | None] = mapped_column(Text)

    price_total: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    price_labor: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    price_material: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    breakdown: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)

    source_page: Mapped[int | None] = mapped_column(Integer)
    source_document: Mapped[str | None] = mapped_column(Text)
    extraction_tokens: Mapped[int | None] = mapped_column(Integer)

    search_text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(INDEX_DIMENSION).with_variant(JSON(), "sqlite")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("year", "code", name="uq_catalog_year_code"),
        Index("idx_catalog_sku", "sku"),
        Index("idx_catalog_page_year", "source_page", "year"),  # Resume check
        Index("idx_catalog_kind", "kind"),
        Index("idx_catalog_chapter", "chapter"),
        # HNSW Index for fast approximate nearest neighbor search
        Index(
            "idx_catalog_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )


class IngestionJobModel(Base):
    """Status record of a catalog ingestion run."""

    __tablename__ = "ingestion_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_document: Mapped[str] = mapped_column(Text, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)

    total_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    extraction_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    embedding_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    current_activity: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(Text)
    logs: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
