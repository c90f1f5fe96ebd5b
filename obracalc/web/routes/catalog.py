"""Catalog routes for the ObraCalc API.

Routes:
- GET    /catalog/search - Identifier, vector or text search
- DELETE /catalog/{year} - Delete all records of a catalog year
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from obracalc.bootstrap import Services
from obracalc.models import ItemKind
from obracalc.services.ports import SearchFilters
from obracalc.web.dependencies import get_services

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("/search")
async def search_catalog(
    q: str = Query(..., min_length=1),
    limit: int = Query(default=10, ge=1, le=100),
    year: int | None = None,
    kind: ItemKind | None = None,
    chapter: str | None = None,
    unit: str | None = None,
    services: Services = Depends(get_services),
):
    """Search the catalog.

    Codes and SKUs resolve directly; anything else goes through vector
    search with a lexical fallback.
    """
    filters = SearchFilters(year=year, kind=kind.value if kind else None, chapter=chapter)
    response = await services.search().search(q, limit, filters, unit=unit)
    return {
        "query": q,
        "strategy": response.strategy.value,
        "error": response.error,
        "results": [
            {
                "score": candidate.score,
                **candidate.record.model_dump(mode="json", exclude={"embedding"}),
            }
            for candidate in response.results
        ],
    }


@router.delete("/{year}")
async def delete_catalog_year(year: int, services: Services = Depends(get_services)):
    """Delete every catalog record of ``year``."""
    deleted = await services.catalog.delete_by_year(year)
    return {"year": year, "deleted": deleted}
