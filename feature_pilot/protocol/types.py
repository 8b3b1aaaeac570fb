"""Structured results produced by the marker protocol parser.

All types are plain dataclasses: the parser never touches persisted state,
and callers convert these into domain documents where needed.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from feature_pilot.models.domain import PlanAcceptanceMapping, PlanDependencies, PlanMeta, PlanTestCoverage


@dataclass
class DecisionOption:
    label: str
    recommended: bool = False


@dataclass
class ParsedDecision:
    """A ``[DECISION_NEEDED]`` block with at least one recognized option."""

    priority: int
    category: str
    question_text: str
    options: list[DecisionOption]
    file: str | None = None
    line: int | None = None


@dataclass
class ParsedPlanStep:
    id: str
    parent_id: str | None
    status: str
    title: str
    description: str
    complexity: str | None = None
    acceptance_criteria_ids: list[str] = field(default_factory=list)
    estimated_files: list[str] = field(default_factory=list)


@dataclass
class ParsedStepComplete:
    id: str
    summary: str
    tests_added: list[str] = field(default_factory=list)
    tests_passing: bool = True

    informal: bool = False
    """True when found by the heading fallback rather than a tag."""


@dataclass
class ParsedImplementationStatus:
    step_id: str = ""
    status: str = ""
    files_modified: int = 0
    tests_status: str = ""
    work_type: str = ""
    progress: int = 0
    message: str = ""


@dataclass
class ParsedPRCreated:
    title: str
    source_branch: str
    target_branch: str
    url: str | None = None


@dataclass
class ParsedCIStatus:
    status: Literal["passing", "failing", "pending"]
    checks: str


@dataclass
class ParsedReturnToPlanning:
    reason: str


@dataclass
class ParsedPlanSections:
    """Composable plan sections; a section is None when its tag is absent."""

    meta: PlanMeta | None = None
    dependencies: PlanDependencies | None = None
    test_coverage: PlanTestCoverage | None = None
    acceptance_mapping: PlanAcceptanceMapping | None = None

    @property
    def any_present(self) -> bool:
        return any(
            section is not None
            for section in (self.meta, self.dependencies, self.test_coverage, self.acceptance_mapping)
        )


@dataclass
class ParsedOutput:
    """Everything the parser recognized in one piece of agent output."""

    decisions: list[ParsedDecision] = field(default_factory=list)
    plan_steps: list[ParsedPlanStep] = field(default_factory=list)
    steps_completed: list[ParsedStepComplete] = field(default_factory=list)
    plan_file_path: str | None = None
    implementation_complete: bool = False
    implementation_summary: str | None = None
    implementation_status: ParsedImplementationStatus | None = None
    all_tests_passing: bool | None = None
    """None unless a paired ``[IMPLEMENTATION_COMPLETE]`` block states it."""

    tests_added: list[str] = field(default_factory=list)
    pr_created: ParsedPRCreated | None = None
    plan_approved: bool = False
    ci_status: ParsedCIStatus | None = None
    ci_failed: bool = False
    pr_approved: bool = False
    return_to_planning: ParsedReturnToPlanning | None = None
    plan_sections: ParsedPlanSections = field(default_factory=ParsedPlanSections)

    plan_mode_entered: bool = False
    """Deprecated flag kept for conversation logs; no control flow reads it."""

    plan_mode_exited: bool = False
    """Deprecated flag kept for conversation logs; no control flow reads it."""

    @property
    def step_completed(self) -> ParsedStepComplete | None:
        """The last completion reported, if any."""
        return self.steps_completed[-1] if self.steps_completed else None

    def completed_ids(self) -> set[str]:
        return {step.id for step in self.steps_completed}

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible form for the conversation log."""
        data = asdict(self)
        data["plan_sections"] = {
            name: section.model_dump(mode="json") if section is not None else None
            for name, section in (
                ("meta", self.plan_sections.meta),
                ("dependencies", self.plan_sections.dependencies),
                ("test_coverage", self.plan_sections.test_coverage),
                ("acceptance_mapping", self.plan_sections.acceptance_mapping),
            )
        }
        return data
