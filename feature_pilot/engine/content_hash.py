"""Content fingerprints for plan steps.

A step's hash covers its title and description with whitespace normalized,
so reformatting a plan does not force a completed step to be implemented
again.
"""

import hashlib
import re

from feature_pilot.models.domain import PlanStep

HASH_LENGTH = 16


def normalize_whitespace(text: str | None) -> str:
    """Normalize line endings, collapse runs of blanks and blank lines, trim."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n+", "\n", text)
    return text.strip()


def compute_content_hash(title: str, description: str | None = None) -> str:
    """First 16 hex chars of sha256 over ``title|description``."""
    content = f"{normalize_whitespace(title)}|{normalize_whitespace(description)}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def compute_step_hash(step: PlanStep) -> str:
    return compute_content_hash(step.title, step.description)


def is_step_content_unchanged(step: PlanStep) -> bool:
    """True when the step has a stored hash that matches its current content."""
    if not step.content_hash:
        return False
    return step.content_hash == compute_step_hash(step)
