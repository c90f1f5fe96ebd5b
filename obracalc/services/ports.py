"""Abstract collaborator interfaces consumed by the ingestion and matching core.

Concrete implementations live in ``obracalc.services.openai_services`` and
``obracalc.db``; tests substitute in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel

from obracalc.models import CatalogRecord, LogEntry, MatchCandidate, TokenUsage

T = TypeVar("T", bound=BaseModel)


@dataclass
class EmbeddingBatch:
    """Vectors for a batch of strings, in input order."""

    vectors: list[list[float]]
    tokens: int = 0


@dataclass
class SearchFilters:
    """Optional restrictions for nearest-neighbour and lexical search."""

    year: int | None = None
    kind: str | None = None
    chapter: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class ExtractionService(ABC):
    """Vision-capable structured extraction over a (sub-)document."""

    @abstractmethod
    async def extract(
        self, document: bytes, instructions: str, output_model: type[T]
    ) -> tuple[T, TokenUsage]:
        """Run one extraction call and return the parsed output and usage."""


class EmbeddingService(ABC):
    """Text embedding generation."""

    max_dimension: int

    @abstractmethod
    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatch:
        """Embed ``texts``; ``vectors[i]`` belongs to ``texts[i]``."""

    async def embed_text(self, text: str) -> list[float]:
        batch = await self.embed_batch([text])
        return batch.vectors[0]


class GenerationService(ABC):
    """Prompt-to-answer call used for judging and decomposition."""

    @abstractmethod
    async def generate(
        self, prompt: str, output_model: type[T] | None = None
    ) -> T | dict[str, Any]:
        """Return ``output_model`` instance, or the raw JSON dict if none given."""


class CatalogStore(ABC):
    """Document store for catalog records."""

    @abstractmethod
    async def upsert_batch(self, records: Sequence[CatalogRecord]) -> int:
        """Insert or update records keyed by ``(year, code)``; returns count written."""

    @abstractmethod
    async def find_by_page(self, page: int, year: int) -> list[CatalogRecord]:
        ...

    @abstractmethod
    async def find_by_identifier(self, identifier: str) -> CatalogRecord | None:
        """Look up a record by exact code or SKU."""

    @abstractmethod
    async def nearest_neighbors(
        self, vector: Sequence[float], k: int, filters: SearchFilters | None = None
    ) -> list[MatchCandidate]:
        """Return up to ``k`` records ordered by cosine similarity (descending)."""

    @abstractmethod
    async def search_by_text(
        self, query: str, limit: int = 10, filters: SearchFilters | None = None
    ) -> list[CatalogRecord]:
        ...

    @abstractmethod
    async def delete_by_year(self, year: int) -> int:
        ...


class JobStatusSink(ABC):
    """Write-only progress surface of ingestion jobs."""

    @abstractmethod
    async def upsert_status(self, job_id: str, fields: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def append_log(self, job_id: str, entry: LogEntry) -> None:
        ...
