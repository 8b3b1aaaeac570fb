"""Agent prompt templates and their sandboxed renderer."""

from feature_pilot.prompts.renderer import PromptRenderer

__all__ = ["PromptRenderer"]
