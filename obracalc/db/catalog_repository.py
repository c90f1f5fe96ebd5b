"""Catalog record persistence (PostgreSQL + pgvector, SQLite for dev/tests)."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from obracalc.db.connection import Database
from obracalc.db.models import CatalogRecordModel
from obracalc.models import BreakdownComponent, CatalogRecord, ItemKind, MatchCandidate
from obracalc.services.ports import CatalogStore, SearchFilters

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ("year", "code")


def cosine_similarity(v1: Sequence[float] | None, v2: Sequence[float] | None) -> float:
    if not v1 or not v2:
        return 0.0
    dot_product = sum(a * b for a, b in zip(v1, v2))
    norm_a = math.sqrt(sum(a * a for a in v1))
    norm_b = math.sqrt(sum(b * b for b in v2))
    return dot_product / (norm_a * norm_b) if norm_a and norm_b else 0.0


def _clamp_score(value: float) -> float:
    return max(0.0, min(1.0, value))


def to_record(row: CatalogRecordModel, include_embedding: bool = False) -> CatalogRecord:
    """Convert a database row to the domain model."""
    embedding = None
    if include_embedding and row.embedding is not None:
        embedding = [float(x) for x in row.embedding]

    return CatalogRecord(
        code=row.code,
        sku=row.sku,
        description=row.description,
        unit=row.unit,
        kind=ItemKind(row.kind),
        chapter=row.chapter,
        section=row.section,
        price_total=row.price_total,
        price_labor=row.price_labor,
        price_material=row.price_material,
        breakdown=[BreakdownComponent(**c) for c in (row.breakdown or [])],
        year=row.year,
        source_page=row.source_page,
        source_document=row.source_document,
        extraction_tokens=row.extraction_tokens,
        embedding=embedding,
    )


class CatalogRepository(CatalogStore):
    """Catalog store backed by the ``catalog_records`` table."""

    def __init__(self, db: Database, batch_size: int = 50):
        self.db = db
        self.batch_size = batch_size

    def _insert(self):
        if self.db.dialect == "postgresql":
            return pg_insert
        return sqlite_insert

    async def upsert_batch(self, records: Sequence[CatalogRecord]) -> int:
        """Upsert records keyed by ``(year, code)`` in chunks of ``batch_size``.

        Each chunk is committed in its own transaction.
        """
        insert = self._insert()
        written = 0

        for start in range(0, len(records), self.batch_size):
            chunk = records[start : start + self.batch_size]
            async with self.db.session() as session:
                for record in chunk:
                    row = record.to_row()
                    stmt = insert(CatalogRecordModel).values(**row)
                    updates: dict[str, Any] = {
                        key: stmt.excluded[key] for key in row if key not in _KEY_COLUMNS
                    }
                    updates["updated_at"] = func.now()
                    stmt = stmt.on_conflict_do_update(
                        index_elements=list(_KEY_COLUMNS), set_=updates
                    )
                    await session.execute(stmt)
            written += len(chunk)
            logger.debug(f"Upserted catalog chunk {start}-{start + len(chunk)}")

        return written

    async def find_by_page(self, page: int, year: int) -> list[CatalogRecord]:
        async with self.db.session() as session:
            stmt = select(CatalogRecordModel).where(
                CatalogRecordModel.source_page == page,
                CatalogRecordModel.year == year,
            )
            result = await session.execute(stmt)
            return [to_record(row) for row in result.scalars().all()]

    async def find_by_identifier(self, identifier: str) -> CatalogRecord | None:
        """Exact match on code or SKU; latest year wins."""
        async with self.db.session() as session:
            stmt = (
                select(CatalogRecordModel)
                .where(
                    or_(
                        CatalogRecordModel.code == identifier,
                        CatalogRecordModel.sku == identifier,
                    )
                )
                .order_by(CatalogRecordModel.year.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalars().first()
            return to_record(row) if row else None

    def _apply_filters(self, stmt, filters: SearchFilters | None):
        if filters is None:
            return stmt
        if filters.year is not None:
            stmt = stmt.where(CatalogRecordModel.year == filters.year)
        if filters.kind:
            stmt = stmt.where(CatalogRecordModel.kind == filters.kind)
        if filters.chapter:
            stmt = stmt.where(CatalogRecordModel.chapter.ilike(f"%{filters.chapter}%"))
        return stmt

    async def nearest_neighbors(
        self, vector: Sequence[float], k: int, filters: SearchFilters | None = None
    ) -> list[MatchCandidate]:
        async with self.db.session() as session:
            if self.db.dialect == "postgresql":
                # pgvector cosine distance operator: <=>
                distance = CatalogRecordModel.embedding.cosine_distance(list(vector)).label(
                    "distance"
                )
                stmt = (
                    select(CatalogRecordModel, distance)
                    .where(CatalogRecordModel.embedding.is_not(None))
                    .order_by(distance)
                    .limit(k)
                )
                stmt = self._apply_filters(stmt, filters)
                result = await session.execute(stmt)
                return [
                    MatchCandidate(record=to_record(row), score=_clamp_score(1 - float(dist)))
                    for row, dist in result.all()
                ]

            # SQLite fallback: fetch and rank in Python
            stmt = select(CatalogRecordModel).where(CatalogRecordModel.embedding.is_not(None))
            stmt = self._apply_filters(stmt, filters)
            rows = (await session.execute(stmt)).scalars().all()

            scored = []
            for row in rows:
                embedding = row.embedding
                if isinstance(embedding, str):
                    embedding = json.loads(embedding)
                scored.append((cosine_similarity(vector, embedding), row))

            scored.sort(key=lambda pair: pair[0], reverse=True)
            return [
                MatchCandidate(record=to_record(row), score=_clamp_score(score))
                for score, row in scored[:k]
            ]

    async def search_by_text(
        self, query: str, limit: int = 10, filters: SearchFilters | None = None
    ) -> list[CatalogRecord]:
        """Lexical fallback: every query term must appear in the search text."""
        terms = [t for t in query.split() if len(t) > 2] or [query.strip()]
        async with self.db.session() as session:
            stmt = select(CatalogRecordModel)
            for term in terms:
                stmt = stmt.where(CatalogRecordModel.search_text.ilike(f"%{term}%"))
            stmt = self._apply_filters(stmt, filters)
            stmt = stmt.order_by(CatalogRecordModel.year.desc(), CatalogRecordModel.code).limit(
                limit
            )
            result = await session.execute(stmt)
            return [to_record(row) for row in result.scalars().all()]

    async def delete_by_year(self, year: int) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(CatalogRecordModel).where(CatalogRecordModel.year == year)
            )
            deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} catalog records for year {year}")
        return deleted

    async def count_by_year(self, year: int) -> int:
        async with self.db.session() as session:
            stmt = select(func.count()).select_from(CatalogRecordModel).where(
                CatalogRecordModel.year == year
            )
            return (await session.execute(stmt)).scalar_one()
