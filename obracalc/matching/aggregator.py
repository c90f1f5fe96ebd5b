"""Budget aggregation over decomposed tasks.

Two request variants are supported:

- ``DecomposeDescription``: decompose a free-text request, resolve each
  subtask sequentially, merge repeated catalog codes, cap singular
  resources and renumber.
- ``OptimizeExistingItem``: re-price one existing line item with a
  concrete commercial material (fixed labour share plus material with
  waste).

Progress is reported through an explicit ``ProgressSink``; events arrive
in subtask order.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from obracalc.canonical.normalize import normalize_text
from obracalc.config import MatchingConfig
from obracalc.matching.decomposer import Decomposer
from obracalc.matching.resolver import MatchingResolver
from obracalc.models import (
    BreakdownComponent,
    DecomposeDescription,
    OptimizeExistingItem,
    ResolvedLineItem,
    quantize_money,
)

logger = logging.getLogger(__name__)

LABOR_SHARE = Decimal("0.60")

# (keywords, waste factor); first match wins
WASTE_FACTORS: list[tuple[tuple[str, ...], Decimal]] = [
    (("ceramica", "porcelanico", "azulejo"), Decimal("0.10")),  # cuts and breakage
    (("parquet", "laminado"), Decimal("0.08")),
]
DEFAULT_WASTE = Decimal("0.05")


@dataclass
class ProgressEvent:
    type: str  # decomposition_start | item_resolving | item_resolved | complete
    payload: dict[str, Any] = field(default_factory=dict)


class ProgressSink(ABC):
    """Receives progress events of a budget run."""

    @abstractmethod
    async def emit(self, event: ProgressEvent) -> None:
        ...


class NullProgressSink(ProgressSink):
    async def emit(self, event: ProgressEvent) -> None:
        return None


class CollectingProgressSink(ProgressSink):
    """Keeps every event in order."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    async def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)


def waste_factor_for(material_name: str) -> Decimal:
    name = normalize_text(material_name)
    for keywords, factor in WASTE_FACTORS:
        if any(keyword in name for keyword in keywords):
            return factor
    return DEFAULT_WASTE


class BudgetAggregator:
    """Turns budget requests into ordered, priced line items."""

    def __init__(
        self,
        resolver: MatchingResolver,
        decomposer: Decomposer,
        config: MatchingConfig,
    ):
        self.resolver = resolver
        self.decomposer = decomposer
        self.config = config
        self._singular_keywords = [normalize_text(k) for k in config.singular_keywords]

    async def handle(
        self,
        request: OptimizeExistingItem | DecomposeDescription,
        sink: ProgressSink | None = None,
    ) -> list[ResolvedLineItem]:
        """Dispatch on the request variant."""
        if isinstance(request, OptimizeExistingItem):
            return [self.optimize(request)]
        if isinstance(request, DecomposeDescription):
            return await self.resolve_all(
                request.description, request.project_context, sink or NullProgressSink()
            )
        raise TypeError(f"Unsupported budget request: {type(request).__name__}")

    # ------------------------------------------------------------------
    # Decomposition
    # ------------------------------------------------------------------

    async def resolve_all(
        self,
        description: str,
        project_context: str | None = None,
        sink: ProgressSink | None = None,
    ) -> list[ResolvedLineItem]:
        sink = sink or NullProgressSink()
        await sink.emit(ProgressEvent("decomposition_start", {"description": description}))

        subtasks = await self.decomposer.decompose(description, project_context)
        aggregated: dict[str, ResolvedLineItem] = {}

        for index, subtask in enumerate(subtasks, start=1):
            await sink.emit(
                ProgressEvent(
                    "item_resolving",
                    {"description": subtask.search_query, "current": index, "total": len(subtasks)},
                )
            )

            item = await self.resolver.resolve(subtask, project_context)
            if item.needs_review or not item.code:
                key = f"REVIEW:{subtask.search_query}"
            else:
                key = item.code

            existing = aggregated.get(key)
            if existing is not None:
                aggregated[key] = existing.with_quantity(existing.quantity + item.quantity)
            else:
                aggregated[key] = item

            await sink.emit(
                ProgressEvent(
                    "item_resolved",
                    {
                        "code": item.code,
                        "description": item.description,
                        "status": "warning" if item.needs_review else "success",
                        "current": index,
                        "total": len(subtasks),
                    },
                )
            )

        items = self.finalize(list(aggregated.values()))
        total = sum((i.total_price for i in items), Decimal("0"))
        await sink.emit(ProgressEvent("complete", {"item_count": len(items), "total": str(total)}))
        return items

    def is_singular(self, item: ResolvedLineItem) -> bool:
        text = normalize_text(f"{item.description} {item.original_task or ''}")
        return any(keyword in text for keyword in self._singular_keywords)

    def finalize(self, items: list[ResolvedLineItem]) -> list[ResolvedLineItem]:
        """Cap singular resources to quantity 1 and renumber 1..N."""
        final = []
        for order, item in enumerate(items, start=1):
            if item.quantity > 1 and self.is_singular(item):
                logger.warning(
                    f"Sanity check: capping quantity of {item.description!r} "
                    f"from {item.quantity} to 1"
                )
                item = item.with_quantity(Decimal("1"))
            final.append(item.model_copy(update={"order": order}))
        return final

    # ------------------------------------------------------------------
    # Material optimisation
    # ------------------------------------------------------------------

    def optimize(self, request: OptimizeExistingItem) -> ResolvedLineItem:
        """Re-price an item with a concrete material.

        Labour is assumed to be 60 % of the original unit price; the
        material cost is its real price plus a waste factor by material
        family.
        """
        item, material = request.item, request.material
        labor = quantize_money(item.unit_price * LABOR_SHARE)
        waste = waste_factor_for(material.name)
        yield_factor = Decimal("1")
        material_total = quantize_money(material.price * yield_factor * (1 + waste))
        unit_price = labor + material_total

        breakdown = [
            BreakdownComponent(
                description="Mano de obra y medios auxiliares (base)",
                kind="labor",
                unit_price=labor,
                quantity=Decimal("1"),
                subtotal=labor,
            ),
            BreakdownComponent(
                code=material.sku,
                description=f"Material: {material.name} ({material.sku})",
                kind="material",
                unit=material.unit,
                unit_price=material.price,
                quantity=yield_factor,
                waste_factor=waste,
                subtotal=material_total,
                is_substituted=True,
            ),
        ]
        note = (
            f"Precio recalculado con material específico: {material.name}. "
            f"Incluye {waste * 100:.0f}% de merma."
        )
        logger.info(f"Optimized [{item.code}] with {material.sku}: {item.unit_price} -> {unit_price}")

        return item.model_copy(
            update={
                "unit_price": unit_price,
                "total_price": quantize_money(unit_price * item.quantity),
                "breakdown": breakdown,
                "is_estimate": False,
                "note": note,
                "reason": f"Re-priced with material {material.sku}",
            }
        )
