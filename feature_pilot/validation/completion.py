"""
Completeness gate for the Planning -> Implementation transition.

``PlanCompletionChecker.check`` is deliberately cheaper than a full
``PlanValidator.validate_plan``: it only asks whether the plan has steps,
whether every step is described well enough to implement, whether parent
references resolve and whether the dependency graph is acyclic. The full
validator's re-prompt context is still attached to a failing result so that the
Planning re-spawn prompt can tell the agent everything that is wrong.
"""

import re
from dataclasses import dataclass, field

from feature_pilot.models.domain import Plan
from feature_pilot.validation.plan_validator import (
    MIN_DESCRIPTION_LENGTH,
    SECTION_NAMES,
    PlanValidationResult,
    PlanValidator,
    find_dependency_cycle,
)

COMPLEXITY_ERROR = re.compile(r"Steps missing complexity rating: (.+)")
STEP_REFERENCE = re.compile(r"Step \d+ \(([^)]+)\)")
UNMAPPED_CRITERION = re.compile(r'Acceptance criterion "([^"]+)"')


@dataclass
class CompletenessResult:
    complete: bool
    issues: list[str] = field(default_factory=list)
    missing_context: str = ""


@dataclass
class RepromptContext:
    """Structured description of what a Planning re-spawn must fix."""

    summary: str
    incomplete_sections: list[str] = field(default_factory=list)
    steps_lacking_complexity: list[str] = field(default_factory=list)
    unmapped_acceptance_criteria: list[str] = field(default_factory=list)
    insufficient_descriptions: list[str] = field(default_factory=list)
    detailed_context: str = ""


class PlanCompletionChecker:
    """Decides whether a plan is complete enough to start Implementation.

    Args:
        validator: Full validator used to render remediation text
    """

    def __init__(self, validator: PlanValidator) -> None:
        self.validator = validator

    def check(self, plan: Plan | None) -> CompletenessResult:
        """Run the cheap completeness gate.

        Returns:
            ``complete`` with no issues, or the issues found plus a markdown
            narrative suitable for a re-spawn prompt.
        """
        if plan is None:
            return CompletenessResult(
                complete=False,
                issues=["No plan found"],
                missing_context="No plan found for this session. Please create a plan first.",
            )

        issues: list[str] = []
        if not plan.steps:
            issues.append("Plan must have at least one step")

        step_ids = {step.id for step in plan.steps}
        for step in plan.steps:
            if not step.title.strip():
                issues.append(f"Step {step.id} has no title")
            if len(step.description.strip()) < MIN_DESCRIPTION_LENGTH:
                issues.append(f"Step {step.id} description must be at least {MIN_DESCRIPTION_LENGTH} characters")
            if step.parent_id and step.parent_id not in step_ids:
                issues.append(f"Step {step.id} has orphaned parentId: {step.parent_id}")

        edges = [(step.id, step.parent_id) for step in plan.steps if step.parent_id]
        if plan.dependencies is not None:
            edges.extend((dep.step_id, dep.depends_on) for dep in plan.dependencies.step_dependencies)
        cycle = find_dependency_cycle(edges)
        if cycle:
            issues.append(f"Circular dependency detected: {' -> '.join(cycle)}")

        if not issues:
            return CompletenessResult(complete=True)

        lines = ["## Plan Incomplete", ""]
        lines.extend(f"- {issue}" for issue in issues)
        validation = self.validator.validate_plan(plan)
        if self.should_return_to_planning(validation):
            lines.extend(["", self.build_reprompt_context(validation).detailed_context])
        return CompletenessResult(complete=False, issues=issues, missing_context="\n".join(lines).rstrip() + "\n")

    def should_return_to_planning(self, result: PlanValidationResult) -> bool:
        return not result.overall

    def build_reprompt_context(self, result: PlanValidationResult) -> RepromptContext:
        """Summarize a full validation result for a Planning re-spawn."""
        incomplete_sections = [name for name, section in result.sections() if not section.valid]
        lacking_complexity: list[str] = []
        insufficient: list[str] = []
        unmapped: list[str] = []

        for error in result.steps.errors:
            match = COMPLEXITY_ERROR.search(error)
            if match:
                lacking_complexity.extend(part.strip() for part in match.group(1).split(","))
            if "description" in error and f"{MIN_DESCRIPTION_LENGTH} characters" in error:
                reference = STEP_REFERENCE.search(error)
                if reference:
                    insufficient.append(reference.group(1))

        for error in result.acceptance_mapping.errors:
            if "no implementing steps" in error:
                match = UNMAPPED_CRITERION.search(error)
                if match:
                    unmapped.append(match.group(1))

        context = RepromptContext(
            summary=_summary(incomplete_sections, lacking_complexity, unmapped, insufficient),
            incomplete_sections=incomplete_sections,
            steps_lacking_complexity=lacking_complexity,
            unmapped_acceptance_criteria=unmapped,
            insufficient_descriptions=insufficient,
        )
        context.detailed_context = _detailed_context(context, result)
        return context


def _summary(sections: list[str], complexity: list[str], unmapped: list[str], descriptions: list[str]) -> str:
    parts = []
    if sections:
        parts.append(f"{len(sections)} incomplete section(s): {', '.join(sections)}")
    if complexity:
        parts.append(f"{len(complexity)} step(s) missing complexity ratings")
    if unmapped:
        parts.append(f"{len(unmapped)} unmapped acceptance criteria")
    if descriptions:
        parts.append(f"{len(descriptions)} step(s) with insufficient descriptions")

    if not parts:
        return "Plan validation passed"
    return f"Plan incomplete: {'; '.join(parts)}"


def _detailed_context(context: RepromptContext, result: PlanValidationResult) -> str:
    lines = [
        "## Plan Validation Failed",
        "",
        "The plan is not yet complete. Please address the following issues before the plan can be approved:",
        "",
    ]

    if context.incomplete_sections:
        lines.extend(["### Incomplete Sections", ""])
        for name in context.incomplete_sections:
            lines.append(f"#### {SECTION_NAMES[name]}")
            lines.extend(f"- {error}" for error in getattr(result, name).errors)
            lines.append("")

    listings = (
        (
            "### Steps Missing Complexity Ratings",
            "The following steps need a complexity rating (low, medium, or high):",
            context.steps_lacking_complexity,
        ),
        (
            "### Unmapped Acceptance Criteria",
            "The following acceptance criteria are not mapped to any implementing steps:",
            context.unmapped_acceptance_criteria,
        ),
        (
            "### Steps With Insufficient Descriptions",
            f"The following steps need more detailed descriptions (at least {MIN_DESCRIPTION_LENGTH} characters):",
            context.insufficient_descriptions,
        ),
    )
    for heading, intro, items in listings:
        if items:
            lines.extend([heading, "", intro, ""])
            lines.extend(f"- {item}" for item in items)
            lines.append("")

    lines.extend(
        [
            "### Instructions",
            "",
            "Re-emit the corrected plan using the plan markers:",
            "- `[PLAN_STEP]` blocks for step updates",
            "- `[PLAN_DEPENDENCIES]` for dependency updates",
            "- `[PLAN_TEST_COVERAGE]` for test coverage updates",
            "- `[PLAN_ACCEPTANCE_MAPPING]` for acceptance criteria mapping updates",
            "",
        ]
    )
    return "\n".join(lines)
