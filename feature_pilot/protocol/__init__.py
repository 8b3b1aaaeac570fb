"""Marker protocol: the bracket-tag grammar the agent uses to report facts.

Key Components:
    - tokenizer: Finds tags and splits attributes from bodies
    - MarkerProtocolParser: Assigns meaning to tags, producing ParsedOutput
    - heuristics: Informal fallback scanners, separate from the grammar
"""

from feature_pilot.protocol.parser import MarkerProtocolParser
from feature_pilot.protocol.types import ParsedOutput

__all__ = ["MarkerProtocolParser", "ParsedOutput"]
