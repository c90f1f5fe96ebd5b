"""Task decomposition: free-text request into atomic, priceable subtasks."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field

from obracalc.core.errors import DecompositionError, GenerationError
from obracalc.models import Subtask
from obracalc.services.ports import GenerationService

logger = logging.getLogger(__name__)

DECOMPOSITION_PROMPT = """\
You are an expert Spanish quantity surveyor. Break the following renovation or
construction request into an ordered list of atomic work items that can each be
priced against a price book.

Request: "{request}"
Project context: "{context}"

Rules:
- One subtask per trade operation (demolition, debris removal, masonry, tiling, ...).
- searchQuery: short price-book style phrasing in Spanish
  (e.g. "Demolición de alicatado de paredes", "Carga manual de escombros").
- quantity: a number; estimate it from the request when not stated.
- unit: m², m, ud, kg, h or pa.
- reasoning: one short sentence explaining the quantity.

Output JSON: {{"subtasks": [{{"searchQuery": "string", "quantity": number,
"unit": "string", "reasoning": "string", "chapter": "string (optional)"}}]}}
"""


class DecomposedSubtask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    search_query: str = Field(..., alias="searchQuery")
    quantity: str | float | int = 1
    unit: str = "ud"
    reasoning: str | None = None
    chapter: str | None = None


class DecompositionOutput(BaseModel):
    subtasks: list[DecomposedSubtask] = Field(default_factory=list)


class Decomposer:
    """Runs one decomposition call per request."""

    def __init__(self, generation: GenerationService):
        self.generation = generation

    async def decompose(self, description: str, project_context: str | None = None) -> list[Subtask]:
        """Return subtasks in request order.

        Raises:
            DecompositionError: If the answer is unusable or holds no subtask.
        """
        prompt = DECOMPOSITION_PROMPT.format(request=description, context=project_context or "")
        try:
            output = await self.generation.generate(prompt, DecompositionOutput)
        except GenerationError as e:
            raise DecompositionError(f"Unusable decomposition answer: {e}") from e
        if isinstance(output, dict):
            output = DecompositionOutput.model_validate(output)

        subtasks = [
            Subtask(
                search_query=s.search_query.strip(),
                quantity=s.quantity,
                unit=s.unit,
                reasoning=s.reasoning,
                chapter=s.chapter,
            )
            for s in output.subtasks
            if s.search_query and s.search_query.strip()
        ]
        if not subtasks:
            raise DecompositionError(f"Failed to decompose description: {description!r}")

        logger.info(f"Decomposition yielded {len(subtasks)} subtasks")
        return subtasks
