"""Matching resolver: price a free-text task against the catalog.

Pipeline per task:
1. Direct identifier shortcut (bare 5-10 digit code or SKU)
2. Rule-based query expansion (original text always included)
3. Nearest-neighbour search per variant, pooled and deduplicated
4. Similarity floor filter
5. Judge verification over the surviving candidates
6. Pricing by match type (LABOR, MATERIAL with installation markup,
   or ESTIMATE from the unit heuristic table)

A failing query variant only removes its candidates. A judge call that
cannot reach the model (network or rate limit) falls back to a
deterministic pick (first labour candidate, then first material
candidate). When no candidate survives, or the judge rejects them all or
answers with something unusable, the task is priced as an estimate.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal

from obracalc.canonical.normalize import build_search_text, normalize_unit
from obracalc.config import MatchingConfig, VectorConfig
from obracalc.core.errors import ErrorKind, classify_error
from obracalc.matching.expansion import expand_query
from obracalc.matching.judge import Judge
from obracalc.models import (
    CatalogRecord,
    ItemKind,
    MatchCandidate,
    MatchType,
    ResolvedLineItem,
    Subtask,
)
from obracalc.services.ports import CatalogStore, EmbeddingService, SearchFilters

logger = logging.getLogger(__name__)


def pool_candidates(candidates: list[MatchCandidate]) -> list[MatchCandidate]:
    """Deduplicate by catalog identity keeping the highest score, best first."""
    best: dict[tuple[int, str], MatchCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.identity)
        if current is None or candidate.score > current.score:
            best[candidate.identity] = candidate
    return sorted(best.values(), key=lambda c: c.score, reverse=True)


class MatchingResolver:
    """Resolves task descriptions into priced line items."""

    def __init__(
        self,
        store: CatalogStore,
        embeddings: EmbeddingService,
        judge: Judge,
        config: MatchingConfig,
        vector_config: VectorConfig | None = None,
        filters: SearchFilters | None = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.judge = judge
        self.config = config
        self.vector_config = vector_config or VectorConfig()
        self.filters = filters
        self._identifier = re.compile(config.identifier_pattern)
        self._fallback_prices = {
            normalize_unit(unit): price for unit, price in config.fallback_unit_prices.items()
        }

    # ------------------------------------------------------------------
    # Candidate gathering
    # ------------------------------------------------------------------

    async def _lookup_identifier(self, query: str) -> CatalogRecord | None:
        if not self._identifier.fullmatch(query):
            return None
        try:
            return await self.store.find_by_identifier(query)
        except Exception as e:
            logger.warning(f"Identifier lookup failed for {query!r}: {e}")
            return None

    async def gather_candidates(self, subtask: Subtask) -> list[MatchCandidate]:
        """Search every query variant and pool the results (no floor applied)."""
        pooled: list[MatchCandidate] = []

        for variant in expand_query(subtask.search_query):
            try:
                text = build_search_text(variant, chapter=subtask.chapter, unit=subtask.unit)
                vector = await self.embeddings.embed_text(text)
                results = await self.store.nearest_neighbors(
                    vector, self.vector_config.candidates_per_query, self.filters
                )
            except Exception as e:
                logger.warning(f"Search failed for variant {variant!r}: {e}")
                continue
            pooled.extend(c.model_copy(update={"query_variant": variant}) for c in results)

        return pool_candidates(pooled)

    def filter_viable(self, candidates: list[MatchCandidate]) -> list[MatchCandidate]:
        """Drop candidates below the similarity floor."""
        return [c for c in candidates if c.score >= self.config.similarity_floor]

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def fallback_price(self, unit: str) -> Decimal:
        return self._fallback_prices.get(normalize_unit(unit), self.config.fallback_default_price)

    def price_match(
        self,
        subtask: Subtask,
        record: CatalogRecord,
        reason: str,
        confidence: float | None = None,
    ) -> ResolvedLineItem:
        """Price ``subtask`` from a matched record.

        Composite work items are LABOR matches at the catalog price; bare
        materials are MATERIAL matches with the installation markup.
        """
        if record.kind is ItemKind.MATERIAL:
            match_type = MatchType.MATERIAL
            unit_price = record.price_total * self.config.material_markup
            default_confidence = self.config.material_confidence
            note = (
                f"Material price + {(self.config.material_markup - 1) * 100:.0f}% "
                "installation estimate"
            )
        else:
            match_type = MatchType.LABOR
            unit_price = record.price_total
            default_confidence = self.config.labor_confidence
            note = None

        return ResolvedLineItem.priced(
            quantity=subtask.quantity,
            unit_price=unit_price,
            code=record.code,
            description=record.description,
            unit=record.unit or subtask.unit,
            match_type=match_type,
            match_confidence=confidence if confidence is not None else default_confidence,
            reason=reason,
            original_task=subtask.search_query,
            breakdown=record.breakdown,
            note=note,
        )

    def estimate(self, subtask: Subtask, reason: str) -> ResolvedLineItem:
        """Heuristic price by unit symbol, flagged for review."""
        return ResolvedLineItem.priced(
            quantity=subtask.quantity,
            unit_price=self.fallback_price(subtask.unit),
            code=None,
            description=subtask.search_query,
            unit=subtask.unit,
            match_type=MatchType.ESTIMATE,
            match_confidence=self.config.estimate_confidence,
            is_estimate=True,
            needs_review=True,
            reason=reason,
            original_task=subtask.search_query,
        )

    def heuristic_pick(
        self, subtask: Subtask, candidates: list[MatchCandidate], reason: str
    ) -> ResolvedLineItem:
        """Deterministic choice when the judge is unavailable."""
        for kind in (ItemKind.WORK, ItemKind.MATERIAL):
            for candidate in candidates:
                if candidate.record.kind is kind:
                    return self.price_match(
                        subtask,
                        candidate.record,
                        reason=f"{reason}; heuristic pick [{candidate.record.code}] "
                        f"(score {candidate.score:.2f})",
                    )
        return self.estimate(subtask, reason=f"{reason}; no usable candidate")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def resolve(self, subtask: Subtask, project_context: str | None = None) -> ResolvedLineItem:
        """Resolve one subtask into a priced line item. Never returns None."""
        query = subtask.search_query.strip()

        record = await self._lookup_identifier(query)
        if record is not None:
            logger.info(f"Identifier hit for {query!r}: [{record.code}]")
            return self.price_match(
                subtask,
                record,
                reason=f"Direct identifier match [{record.code}]",
                confidence=self.config.identity_confidence,
            )

        candidates = await self.gather_candidates(subtask)
        viable = self.filter_viable(candidates)
        logger.info(
            f"{query!r}: {len(candidates)} unique candidates, {len(viable)} above "
            f"{self.config.similarity_floor:.2f}"
        )

        if not viable:
            reason = (
                "No candidates found"
                if not candidates
                else f"All {len(candidates)} candidates below similarity floor "
                f"{self.config.similarity_floor:.2f}"
            )
            return self.estimate(subtask, reason=reason)

        shortlist = viable[: self.config.max_judge_candidates]
        try:
            verdict = await self.judge.select(query, shortlist, project_context)
        except Exception as e:
            if classify_error(e) is ErrorKind.OTHER:
                logger.error(f"Judge verification failed for {query!r}: {e}")
                return self.estimate(subtask, reason=f"Judge failed ({e})")
            logger.error(f"Judge unreachable for {query!r}, using heuristic: {e}")
            return self.heuristic_pick(subtask, shortlist, reason=f"Judge unavailable ({e})")

        if verdict.candidate is None:
            return self.estimate(subtask, reason=f"Judge rejected all candidates: {verdict.reason}")

        return self.price_match(
            subtask,
            verdict.candidate.record,
            reason=f"Verified match [{verdict.candidate.record.code}]: {verdict.reason}",
        )

    async def resolve_text(
        self,
        description: str,
        unit: str = "ud",
        quantity: Decimal = Decimal("1"),
        project_context: str | None = None,
    ) -> ResolvedLineItem:
        """Resolve a bare description (quantity 1 by default)."""
        subtask = Subtask(search_query=description, unit=unit, quantity=quantity)
        return await self.resolve(subtask, project_context)
