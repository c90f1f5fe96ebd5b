"""Rule-based query expansion for catalog search.

Runs once per subtask inside the resolver loop, so it is a pure string
transformation with no model call. Each rule rewrites the first
occurrence of a colloquial trade term into the wording price books use.
"""

from __future__ import annotations

import re

# (pattern, replacement); a trailing "de" is absorbed so it is not doubled
SYNONYM_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"picar(?:\s+de)?", re.IGNORECASE), "demolición de"),
    (re.compile(r"retirada(?:\s+de)?", re.IGNORECASE), "carga manual de"),
    (re.compile(r"desmontaje(?:\s+de)?", re.IGNORECASE), "demolición de"),
]


def expand_query(description: str, rules: list[tuple[re.Pattern[str], str]] | None = None) -> list[str]:
    """Return the original description followed by its rewritten variants.

    The original text is always first and included verbatim; duplicates
    are removed while keeping order.
    """
    variants = [description]
    for pattern, replacement in rules if rules is not None else SYNONYM_RULES:
        if pattern.search(description):
            variants.append(pattern.sub(replacement, description, count=1))

    return list(dict.fromkeys(variants))
