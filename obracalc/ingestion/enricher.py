"""Embedding enrichment of extracted catalog records."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from obracalc.core.errors import (
    DimensionMismatchError,
    EmbeddingError,
    ErrorKind,
    classify_error,
)
from obracalc.models import CatalogRecord
from obracalc.services.ports import EmbeddingService

logger = logging.getLogger(__name__)


def validate_dimensions(vectors: Sequence[Sequence[float]], expected: int) -> None:
    """Raise ``DimensionMismatchError`` unless every vector has ``expected`` entries."""
    for index, vector in enumerate(vectors):
        if len(vector) != expected:
            raise DimensionMismatchError(expected=expected, actual=len(vector), index=index)


class EmbeddingEnricher:
    """Attaches search vectors to records before persistence.

    Vectors are validated against the index dimension; a mismatch fails
    the whole batch so a corrupt vector never reaches the store.
    """

    def __init__(self, service: EmbeddingService, index_dimension: int, batch_size: int = 100):
        if service.max_dimension != index_dimension:
            raise DimensionMismatchError(expected=index_dimension, actual=service.max_dimension)
        self.service = service
        self.index_dimension = index_dimension
        self.batch_size = batch_size
        self.tokens_used = 0

    async def enrich(self, records: Sequence[CatalogRecord]) -> list[CatalogRecord]:
        """Return copies of ``records`` with ``embedding`` set.

        Raises:
            DimensionMismatchError: A returned vector has the wrong size.
            EmbeddingError: The embedding call failed. Network failures are
                re-raised unchanged so callers can classify them.
        """
        enriched: list[CatalogRecord] = []

        for start in range(0, len(records), self.batch_size):
            chunk = records[start : start + self.batch_size]
            texts = [record.search_text for record in chunk]

            try:
                batch = await self.service.embed_batch(texts)
            except EmbeddingError:
                raise
            except Exception as e:
                if classify_error(e) is not ErrorKind.OTHER:
                    raise
                raise EmbeddingError(f"Embedding batch failed: {e}") from e

            if len(batch.vectors) != len(chunk):
                raise EmbeddingError(
                    f"Embedding count mismatch: sent {len(chunk)}, got {len(batch.vectors)}"
                )
            validate_dimensions(batch.vectors, self.index_dimension)

            self.tokens_used += batch.tokens
            enriched.extend(
                record.model_copy(update={"embedding": list(vector)})
                for record, vector in zip(chunk, batch.vectors)
            )
            logger.debug(f"Embedded records {start}-{start + len(chunk)}")

        return enriched
