"""Catalog search (pure-search path).

Same identifier shortcut and canonical query string as the resolver, but
without a judge. When the embedding or vector search fails the service
degrades to lexical search instead of failing the caller.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from obracalc.canonical.normalize import build_search_text
from obracalc.config import MatchingConfig
from obracalc.models import MatchCandidate
from obracalc.services.ports import CatalogStore, EmbeddingService, SearchFilters

logger = logging.getLogger(__name__)


class SearchStrategy(str, Enum):
    IDENTIFIER = "identifier"
    VECTOR = "vector"
    TEXT = "text"


@dataclass
class SearchResponse:
    strategy: SearchStrategy
    results: list[MatchCandidate] = field(default_factory=list)
    error: str | None = None


class CatalogSearchService:
    """Searches the catalog by identifier, vector similarity or text."""

    def __init__(
        self,
        store: CatalogStore,
        embeddings: EmbeddingService,
        config: MatchingConfig,
    ):
        self.store = store
        self.embeddings = embeddings
        self.config = config
        self._identifier = re.compile(config.identifier_pattern)

    async def search(
        self,
        query: str,
        limit: int = 10,
        filters: SearchFilters | None = None,
        unit: str | None = None,
    ) -> SearchResponse:
        query = query.strip()
        if not query:
            return SearchResponse(strategy=SearchStrategy.TEXT)

        if self._identifier.fullmatch(query):
            record = await self.store.find_by_identifier(query)
            if record is not None:
                return SearchResponse(
                    strategy=SearchStrategy.IDENTIFIER,
                    results=[MatchCandidate(record=record, score=1.0, query_variant=query)],
                )

        chapter = filters.chapter if filters else None
        try:
            vector = await self.embeddings.embed_text(
                build_search_text(query, chapter=chapter, unit=unit)
            )
            results = await self.store.nearest_neighbors(vector, limit, filters)
            return SearchResponse(
                strategy=SearchStrategy.VECTOR,
                results=[c.model_copy(update={"query_variant": query}) for c in results],
            )
        except Exception as e:
            logger.warning(f"Vector search failed for {query!r}, falling back to text search: {e}")
            records = await self.store.search_by_text(query, limit, filters)
            return SearchResponse(
                strategy=SearchStrategy.TEXT,
                results=[MatchCandidate(record=r, score=0.0, query_variant=query) for r in records],
                error=str(e),
            )
