"""Tokenizer for the bracket-tag marker grammar.

The agent communicates structured facts by embedding tags in free text::

    [TAG attr="value" other='x']body[/TAG]     paired form
    [TAG attr="value"]                          self-closing form

Tag names are upper-case words. An opening tag is paired when its
``[/TAG]`` closer appears before the next opening tag of the same name;
otherwise it is self-closing. Every opening tag yields a token, including
tags nested inside another tag's body. The tokenizer only finds tags and
splits attributes from bodies; meaning is assigned by the parser.

Example:
    >>> tokens = tokenize('[PLAN_FILE path="docs/plan.md"]')
    >>> tokens[0].name, tokens[0].attrs, tokens[0].self_closing
    ('PLAN_FILE', {'path': 'docs/plan.md'}, True)
"""

import re
from dataclasses import dataclass, field

# Attribute text may hold quoted values containing "]" but never spans lines.
OPEN_TAG_PATTERN = re.compile(r"\[([A-Z][A-Z0-9_]*)((?:[ \t]+(?:[^\]\"'\n]|\"[^\"\n]*\"|'[^'\n]*')*)?)\]")
ATTR_PATTERN = re.compile(r"([A-Za-z_][\w-]*)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")


@dataclass(frozen=True)
class MarkerToken:
    """One tag occurrence in agent output.

    Attributes:
        name: Upper-case tag name, e.g. ``PLAN_STEP``
        attrs: Attribute values keyed by attribute name
        body: Text between the opening and closing tag ("" if self-closing)
        self_closing: True when no closing tag belongs to this opener
        start: Offset of the opening ``[`` in the source text
        end: Offset just past the closing tag, or past the opening tag when
            self-closing
    """

    name: str
    attrs: dict[str, str] = field(default_factory=dict)
    body: str = ""
    self_closing: bool = True
    start: int = 0
    end: int = 0


def parse_attributes(raw: str) -> dict[str, str]:
    """Parse ``key="value"`` / ``key='value'`` pairs from an opening tag."""
    attrs: dict[str, str] = {}
    for match in ATTR_PATTERN.finditer(raw):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        attrs[match.group(1)] = value
    return attrs


def tokenize(text: str) -> list[MarkerToken]:
    """Split text into marker tokens ordered by start offset.

    Closing tags without an opener are ignored.
    """
    matches = list(OPEN_TAG_PATTERN.finditer(text))
    tokens: list[MarkerToken] = []

    for index, match in enumerate(matches):
        name = match.group(1)
        attrs = parse_attributes(match.group(2) or "")

        next_same = next((m.start() for m in matches[index + 1 :] if m.group(1) == name), len(text))
        closing = f"[/{name}]"
        close_at = text.find(closing, match.end(), next_same)

        if close_at == -1:
            tokens.append(MarkerToken(name, attrs, "", True, match.start(), match.end()))
        else:
            body = text[match.end() : close_at]
            tokens.append(MarkerToken(name, attrs, body, False, match.start(), close_at + len(closing)))

    return tokens


def find_tokens(text: str, name: str, *, paired_only: bool = False) -> list[MarkerToken]:
    """Return the tokens with the given tag name.

    Args:
        text: Raw agent output
        name: Tag name to select
        paired_only: Drop self-closing occurrences
    """
    return [
        token for token in tokenize(text) if token.name == name and (not paired_only or not token.self_closing)
    ]


def has_token(text: str, name: str) -> bool:
    """True if an opening ``[NAME ...]`` tag occurs anywhere in the text."""
    return any(match.group(1) == name for match in OPEN_TAG_PATTERN.finditer(text))
