"""Wiring of configured components.

Entry points (CLI, worker, web app) build one ``Services`` from an
``AppConfig`` and pass its members around explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from obracalc.config import AppConfig
from obracalc.db.catalog_repository import CatalogRepository
from obracalc.db.connection import Database
from obracalc.db.job_repository import JobRepository
from obracalc.ingestion.enricher import EmbeddingEnricher
from obracalc.ingestion.extractor import ExtractionWorker
from obracalc.ingestion.orchestrator import IngestionOrchestrator
from obracalc.matching.aggregator import BudgetAggregator
from obracalc.matching.decomposer import Decomposer
from obracalc.matching.judge import Judge
from obracalc.matching.resolver import MatchingResolver
from obracalc.matching.search import CatalogSearchService
from obracalc.services.cache import CachedEmbeddingService, RedisCache
from obracalc.services.openai_services import (
    OpenAIEmbeddingService,
    OpenAIExtractionService,
    OpenAIGenerationService,
    build_client,
)
from obracalc.services.ports import EmbeddingService, ExtractionService, GenerationService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    db: Database
    catalog: CatalogRepository
    jobs: JobRepository
    extraction: ExtractionService
    embeddings: EmbeddingService
    generation: GenerationService
    cache: RedisCache | None = None

    def orchestrator(self) -> IngestionOrchestrator:
        """New orchestrator per run (the enricher counts tokens per instance)."""
        return IngestionOrchestrator(
            worker=ExtractionWorker(self.extraction, self.config.ingestion),
            enricher=EmbeddingEnricher(
                self.embeddings,
                index_dimension=self.config.vector.index_dimension,
                batch_size=self.config.ingestion.embedding_batch_size,
            ),
            store=self.catalog,
            sink=self.jobs,
            config=self.config.ingestion,
        )

    def resolver(self) -> MatchingResolver:
        return MatchingResolver(
            store=self.catalog,
            embeddings=self.embeddings,
            judge=Judge(self.generation),
            config=self.config.matching,
            vector_config=self.config.vector,
        )

    def aggregator(self) -> BudgetAggregator:
        return BudgetAggregator(
            resolver=self.resolver(),
            decomposer=Decomposer(self.generation),
            config=self.config.matching,
        )

    def search(self) -> CatalogSearchService:
        return CatalogSearchService(self.catalog, self.embeddings, self.config.matching)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await self.db.dispose()


def build_services(config: AppConfig) -> Services:
    """Create database, repositories and OpenAI-backed services."""
    db = Database(config.db)
    client = build_client(config.llm)

    embeddings: EmbeddingService = OpenAIEmbeddingService(
        config.llm, dimension=config.vector.index_dimension, client=client
    )
    cache = None
    if config.cache.enabled:
        cache = RedisCache(config.cache)
        embeddings = CachedEmbeddingService(embeddings, cache, model=config.llm.embeddings_model)
        logger.info("Query embedding cache enabled")

    return Services(
        config=config,
        db=db,
        catalog=CatalogRepository(db, batch_size=config.ingestion.upsert_batch_size),
        jobs=JobRepository(db),
        extraction=OpenAIExtractionService(config.llm, client=client),
        embeddings=embeddings,
        generation=OpenAIGenerationService(config.llm, client=client),
        cache=cache,
    )
