"""Fallback heuristics for agents that skip the formal marker grammar.

These scanners run only after the tokenizer-based parser found nothing for
a given fact. They are kept apart from the grammar so that a change in
what counts as an "informal" completion can never alter how a formal tag
is read.

Recognized informal step completions::

    ## Step 3 Complete
    ### **Step auth-2 Completed**
    **Step 4 Done**
"""

import re
from collections.abc import Iterable

from feature_pilot.protocol.types import ParsedStepComplete

HEADING_PATTERNS = (
    re.compile(r"(?:^|\n)#+\s*\*?\*?Step\s+(\d+|[a-z]+-\d+)\s+(?:Complete|Completed|Done)\*?\*?[ \t]*(?=\n|$)", re.I),
    re.compile(r"(?:^|\n)\*?\*?Step\s+(\d+|[a-z]+-\d+)\s+(?:Complete|Completed|Done)\*?\*?[ \t]*(?=\n|$)", re.I),
)

CONTEXT_WINDOW = 500
CONTEXT_BOUNDARY = re.compile(r"\n(?:#+\s|\*\*Step|\[STEP)")


def scan_informal_step_completions(text: str, seen_ids: Iterable[str] = ()) -> list[ParsedStepComplete]:
    """Find "Step N Complete" style headings.

    The summary is the text following the heading, up to the next heading,
    bold step heading or step tag, capped at ``CONTEXT_WINDOW`` characters.

    Args:
        text: Raw agent output
        seen_ids: Step ids already reported by formal markers; these are
            not reported again

    Returns:
        One completion per newly seen step id, tests assumed passing.
    """
    seen = set(seen_ids)
    found: list[ParsedStepComplete] = []

    for pattern in HEADING_PATTERNS:
        for match in pattern.finditer(text):
            step_id = match.group(1)
            if step_id in seen:
                continue
            seen.add(step_id)

            window = text[match.end() : match.end() + CONTEXT_WINDOW]
            summary = CONTEXT_BOUNDARY.split(window, maxsplit=1)[0].strip()
            found.append(
                ParsedStepComplete(
                    id=step_id,
                    summary=summary or f"Step {step_id} completed",
                    tests_added=[],
                    tests_passing=True,
                    informal=True,
                )
            )

    return found
