"""Judge verification: pick the single best catalog candidate, or none."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from obracalc.core.errors import GenerationError
from obracalc.models import MatchCandidate
from obracalc.services.ports import GenerationService

logger = logging.getLogger(__name__)


class JudgeDecision(BaseModel):
    """Raw answer shape; ``selectedIndex`` is validated by ``Judge``."""

    model_config = ConfigDict(populate_by_name=True)

    selected_index: Any = Field(0, alias="selectedIndex")
    reason: str | None = None


@dataclass
class JudgeVerdict:
    """Judge outcome. ``candidate`` is None when all candidates were rejected."""

    candidate: MatchCandidate | None
    reason: str
    malformed: bool = False


JUDGE_PROMPT = """\
I need to find the best price book item match for a construction task.

Task: "{task}"
Context: "{context}"

Candidates (from database):
{candidates}

Instructions:
1. Analyze semantic equivalence. "Picar" ≈ "Demolición". "Retirada" ≈ "Carga".
2. Check that the candidate covers the task scope.
3. Select the BEST match index (1-{count}).
4. If NONE are good matches (different trade, or a massive price difference such
   as 10€ vs 2000€), return 0.

Output JSON: {{"selectedIndex": number, "reason": "string"}}
"""


def format_candidates(candidates: list[MatchCandidate]) -> str:
    lines = []
    for i, candidate in enumerate(candidates, start=1):
        record = candidate.record
        lines.append(
            f"{i}. [{record.code}] {record.description} "
            f"(Unit: {record.unit}, Price: {record.price_total}€)"
        )
    return "\n".join(lines)


def parse_selection(value: Any, count: int) -> int | None:
    """Validate a 1-based selection. 0 means "none".

    Returns None for anything malformed: non-integers, booleans, lists
    (ties), or indices out of range.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        return None
    if value < 0 or value > count:
        return None
    return value


class Judge:
    """Asks the generation service to verify candidates against the task."""

    def __init__(self, generation: GenerationService):
        self.generation = generation

    def build_prompt(
        self, task: str, candidates: list[MatchCandidate], context: str | None = None
    ) -> str:
        return JUDGE_PROMPT.format(
            task=task,
            context=context or "",
            candidates=format_candidates(candidates),
            count=len(candidates),
        )

    async def select(
        self, task: str, candidates: list[MatchCandidate], context: str | None = None
    ) -> JudgeVerdict:
        """Run the judge.

        Malformed, unparseable or tied answers are treated as a rejection.
        Transport errors from the generation call propagate to the caller.
        """
        if not candidates:
            return JudgeVerdict(candidate=None, reason="No candidates to judge")

        try:
            decision = await self.generation.generate(
                self.build_prompt(task, candidates, context), JudgeDecision
            )
        except GenerationError as e:
            logger.warning(f"Judge answer for {task!r} could not be parsed; treating as rejection: {e}")
            return JudgeVerdict(candidate=None, reason=f"Malformed judge answer: {e}", malformed=True)
        if isinstance(decision, dict):
            decision = JudgeDecision.model_validate(decision)

        reason = decision.reason or "No reason provided"
        selection = parse_selection(decision.selected_index, len(candidates))

        if selection is None:
            logger.warning(
                f"Judge returned malformed selection {decision.selected_index!r} for "
                f"{task!r}; treating as rejection"
            )
            return JudgeVerdict(
                candidate=None,
                reason=f"Malformed judge answer ({decision.selected_index!r}): {reason}",
                malformed=True,
            )
        if selection == 0:
            logger.info(f"Judge rejected all {len(candidates)} candidates for {task!r}: {reason}")
            return JudgeVerdict(candidate=None, reason=reason)

        chosen = candidates[selection - 1]
        logger.info(f"Judge selected [{chosen.record.code}] for {task!r}: {reason}")
        return JudgeVerdict(candidate=chosen, reason=reason)
