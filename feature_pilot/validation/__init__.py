"""Plan validation: full schema/graph validation and the Planning exit gate."""

from feature_pilot.validation.completion import CompletenessResult, PlanCompletionChecker, RepromptContext
from feature_pilot.validation.plan_validator import (
    PlanValidationResult,
    PlanValidator,
    SectionResult,
    find_dependency_cycle,
    has_circular_dependencies,
)

__all__ = [
    "CompletenessResult",
    "PlanCompletionChecker",
    "PlanValidationResult",
    "PlanValidator",
    "RepromptContext",
    "SectionResult",
    "find_dependency_cycle",
    "has_circular_dependencies",
]
