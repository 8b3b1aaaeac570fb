"""feature-pilot: stage-driven orchestration of an external coding agent.

A feature request moves through discovery, planning, implementation, pull
request creation, review and final approval. Each stage spawns the agent,
parses its marker protocol output and decides the next transition.
"""

__version__ = "0.1.0"
