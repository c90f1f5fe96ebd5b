"""Budget routes for the ObraCalc API.

Routes:
- POST /budget/resolve - Decompose a request (or optimise one item) into priced line items
- POST /budget/item    - Price a single task description
"""

from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, Field

from obracalc.bootstrap import Services
from obracalc.core.errors import DecompositionError
from obracalc.matching.aggregator import CollectingProgressSink
from obracalc.models import BudgetRequest, ResolvedLineItem
from obracalc.web.dependencies import get_services

router = APIRouter(prefix="/budget", tags=["budget"])


class BudgetResponse(BaseModel):
    items: list[ResolvedLineItem]
    total: Decimal
    events: list[dict] = Field(default_factory=list)


class ItemRequest(BaseModel):
    description: str = Field(..., min_length=1)
    unit: str = "ud"
    quantity: Decimal = Decimal("1")
    project_context: str | None = None


@router.post("/resolve", response_model=BudgetResponse)
async def resolve_budget(
    request: BudgetRequest = Body(...),
    services: Services = Depends(get_services),
):
    """Run a budget request and return the items with the progress log."""
    sink = CollectingProgressSink()
    try:
        items = await services.aggregator().handle(request, sink)
    except DecompositionError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return BudgetResponse(
        items=items,
        total=sum((i.total_price for i in items), Decimal("0")),
        events=[asdict(event) for event in sink.events],
    )


@router.post("/item", response_model=ResolvedLineItem)
async def resolve_item(request: ItemRequest, services: Services = Depends(get_services)):
    item = await services.resolver().resolve_text(
        request.description,
        unit=request.unit,
        quantity=request.quantity,
        project_context=request.project_context,
    )
    return item.model_copy(update={"order": 1})
