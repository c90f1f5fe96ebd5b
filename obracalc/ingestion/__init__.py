"""Price book ingestion for ObraCalc.

Splits PDF price books into pages, extracts structured catalog records,
enriches them with embeddings and upserts them resumably.
"""

from obracalc.ingestion.enricher import EmbeddingEnricher
from obracalc.ingestion.extractor import ExtractionWorker, PageExtractionOutput
from obracalc.ingestion.orchestrator import IngestionOrchestrator
from obracalc.ingestion.splitter import chunk_ranges, page_count, split_pages

__all__ = [
    "EmbeddingEnricher",
    "ExtractionWorker",
    "PageExtractionOutput",
    "IngestionOrchestrator",
    "chunk_ranges",
    "page_count",
    "split_pages",
]
