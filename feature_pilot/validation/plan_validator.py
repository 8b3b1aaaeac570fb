"""
Schema and graph validation for composable plans.

A plan is validated as five independent sections (meta, steps,
dependencies, test coverage, acceptance mapping) followed by cross-section
checks: every id referenced by a dependency, coverage entry, acceptance
mapping or ``parent_id`` must name an existing step, and step dependency
edges must not form a cycle.

Section rules are expressed as strict pydantic schemas, separate from the
lenient persisted models in ``feature_pilot.models.domain``, so a stored plan
can always be loaded and then reported on in full.

Example:
    >>> validator = PlanValidator()
    >>> result = validator.validate_plan(plan)
    >>> if not result.overall:
    ...     prompt_context = validator.generate_validation_context(plan)
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StrictBool
from pydantic import ValidationError as SchemaError

from feature_pilot.models.domain import Plan, ValidationStatus, utc_now

MIN_DESCRIPTION_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 5000
MAX_TITLE_LENGTH = 200

SECTIONS = ("meta", "steps", "dependencies", "test_coverage", "acceptance_mapping")

SECTION_NAMES = {
    "meta": "Plan Metadata",
    "steps": "Plan Steps",
    "dependencies": "Dependencies",
    "test_coverage": "Test Coverage",
    "acceptance_mapping": "Acceptance Criteria Mapping",
}

PLACEHOLDER_PATTERNS = tuple(
    re.compile(pattern, re.I)
    for pattern in (
        r"\bTBD\b",
        r"\bTODO\b",
        r"\bFIXME\b",
        r"\bXXX\b",
        r"\bPLACEHOLDER\b",
        r"\bTO BE DETERMINED\b",
        r"\bTO BE DEFINED\b",
        r"\bNEEDS?\s+(?:TO BE\s+)?(?:FILLED|COMPLETED|WRITTEN)\b",
        r"\[\.{3,}\]",
        r"<\.{3,}>",
    )
)

MARKER_PATTERNS = tuple(
    re.compile(pattern, re.I)
    for pattern in (
        r"\[/?DECISION_NEEDED",
        r"\[/?PLAN_STEP",
        r"\[/?PR_CREATED",
        r"\[/?CI_STATUS",
        r"\[/?STEP_COMPLETE",
        r"\[/?IMPLEMENTATION_COMPLETE",
        r"\[/?RETURN_TO_STAGE_2",
    )
)


def contains_placeholder(text: str) -> bool:
    """True if text holds placeholder wording such as TBD or ``[...]``."""
    return any(pattern.search(text) for pattern in PLACEHOLDER_PATTERNS)


def contains_marker_pattern(text: str) -> bool:
    """True if text leaks a protocol tag the parser would act on."""
    return any(pattern.search(text) for pattern in MARKER_PATTERNS)


def find_dependency_cycle(edges: Iterable[tuple[str, str]]) -> list[str] | None:
    """Find the first cycle in a step dependency graph.

    Args:
        edges: ``(step_id, depends_on)`` pairs

    Returns:
        The cycle as an ordered id sequence whose last id repeats the first
        (``["a", "b", "a"]``), or None when the graph is acyclic.
    """
    graph: dict[str, list[str]] = {}
    for step_id, depends_on in edges:
        graph.setdefault(step_id, []).append(depends_on)

    visited: set[str] = set()
    for root in list(graph):
        if root in visited:
            continue

        # explicit stack: dependency chains can be longer than the recursion limit
        visited.add(root)
        path = [root]
        on_path = {root}
        pending = [iter(graph[root])]
        while pending:
            neighbor = next(pending[-1], None)
            if neighbor is None:
                pending.pop()
                on_path.discard(path.pop())
                continue
            if neighbor in on_path:
                return path[path.index(neighbor) :] + [neighbor]
            if neighbor not in visited:
                visited.add(neighbor)
                on_path.add(neighbor)
                path.append(neighbor)
                pending.append(iter(graph.get(neighbor, [])))
    return None


def has_circular_dependencies(edges: Iterable[tuple[str, str]]) -> bool:
    """True iff the directed ``(step_id, depends_on)`` graph has a cycle."""
    return find_dependency_cycle(edges) is not None


# =============================================================================
# Section schemas
# =============================================================================


def _step_title(value: str) -> str:
    if not value.strip():
        raise ValueError("Step title is required")
    if len(value) > MAX_TITLE_LENGTH:
        raise ValueError(f"Step title must be {MAX_TITLE_LENGTH} characters or less")
    if contains_placeholder(value):
        raise ValueError("Step title contains placeholder text")
    if contains_marker_pattern(value):
        raise ValueError("Step title contains invalid marker patterns")
    return value


def _step_description(value: str) -> str:
    if len(value.strip()) < MIN_DESCRIPTION_LENGTH:
        raise ValueError(f"Step description must be at least {MIN_DESCRIPTION_LENGTH} characters")
    if len(value) > MAX_DESCRIPTION_LENGTH:
        raise ValueError(f"Step description must be {MAX_DESCRIPTION_LENGTH} characters or less")
    if contains_placeholder(value):
        raise ValueError("Step description contains placeholder text")
    if contains_marker_pattern(value):
        raise ValueError("Step description contains invalid marker patterns")
    return value


def _required(message: str):
    def check(value: str) -> str:
        if not value.strip():
            raise ValueError(message)
        return value

    return AfterValidator(check)


def _at_least_one(message: str):
    def check(value: list[Any]) -> list[Any]:
        if not value:
            raise ValueError(message)
        return value

    return AfterValidator(check)


def _percentage(value: float | None) -> float | None:
    if value is not None and not 0 <= value <= 100:
        raise ValueError("Coverage target must be between 0 and 100")
    return value


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _non_negative(value: int) -> int:
    if value < 0:
        raise ValueError("Review count must be non-negative")
    return value


class MetaSchema(_Schema):
    version: Annotated[str, _required("Version is required")]
    session_id: Annotated[str, _required("Session ID is required")]
    created_at: datetime
    updated_at: datetime
    is_approved: StrictBool
    review_count: Annotated[int, Field(strict=True), AfterValidator(_non_negative)]


class StepSchema(_Schema):
    id: Annotated[str, _required("Step ID is required")]
    parent_id: str | None = None
    order_index: Annotated[int, Field(ge=0)] = 0
    title: Annotated[str, AfterValidator(_step_title)]
    description: Annotated[str, AfterValidator(_step_description)]
    status: Literal["pending", "in_progress", "completed", "blocked", "skipped", "needs_review"] = "pending"
    complexity: Literal["low", "medium", "high"] | None = None


class StepDependencySchema(_Schema):
    step_id: Annotated[str, _required("Step ID is required")]
    depends_on: Annotated[str, _required("Dependency step ID is required")]
    reason: str | None = None


class ExternalDependencySchema(_Schema):
    name: Annotated[str, _required("Dependency name is required")]
    type: Literal["npm", "api", "service", "file", "other"]
    version: str | None = None
    reason: Annotated[str, _required("Dependency reason is required")]
    required_by: Annotated[list[str], _at_least_one("At least one step must require this dependency")]


class DependenciesSchema(_Schema):
    step_dependencies: list[StepDependencySchema]
    external_dependencies: list[ExternalDependencySchema]


class StepCoverageSchema(_Schema):
    step_id: Annotated[str, _required("Step ID is required")]
    test_types: Annotated[list[str], _at_least_one("At least one test type is required per step")]
    coverage_target: Annotated[float | None, AfterValidator(_percentage)] = None


class CoverageSchema(_Schema):
    framework: Annotated[str, _required("Testing framework is required")]
    required_test_types: Annotated[list[str], _at_least_one("At least one global test type is required")]
    step_coverage: list[StepCoverageSchema]
    global_coverage_target: Annotated[float | None, AfterValidator(_percentage)] = None


class CriterionMappingSchema(_Schema):
    criterion_id: Annotated[str, _required("Criterion ID is required")]
    criterion_text: Annotated[str, _required("Criterion text is required")]
    implementing_step_ids: list[str]
    is_fully_covered: StrictBool


class AcceptanceMappingSchema(_Schema):
    mappings: list[CriterionMappingSchema]
    updated_at: datetime


def _schema_errors(error: SchemaError, prefix: str = "") -> list[str]:
    """Flatten a pydantic error into ``location: message`` strings."""
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        message = detail["msg"].removeprefix("Value error, ")
        if prefix:
            location = f"{prefix} {location}".strip()
        messages.append(f"{location}: {message}" if location else message)
    return messages


# =============================================================================
# Results
# =============================================================================


@dataclass
class SectionResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: list[str]) -> "SectionResult":
        return cls(valid=not errors, errors=errors)


@dataclass
class PlanValidationResult:
    """Per-section outcome of a full plan validation."""

    meta: SectionResult
    steps: SectionResult
    dependencies: SectionResult
    test_coverage: SectionResult
    acceptance_mapping: SectionResult

    @property
    def overall(self) -> bool:
        return all(section.valid for _, section in self.sections())

    def sections(self) -> list[tuple[str, SectionResult]]:
        return [(name, getattr(self, name)) for name in SECTIONS]

    def errors_by_section(self) -> dict[str, list[str]]:
        """Errors of invalid sections only."""
        return {name: list(section.errors) for name, section in self.sections() if not section.valid}


@dataclass
class IncompleteSection:
    section: str
    errors: list[str]


PlanLike = Plan | Mapping[str, Any]


def _as_dict(plan: PlanLike | None) -> dict[str, Any]:
    if plan is None:
        return {}
    if isinstance(plan, BaseModel):
        return plan.model_dump(mode="json")
    return dict(plan)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value


# =============================================================================
# Validator
# =============================================================================


class PlanValidator:
    """Validates plans section by section and renders remediation text.

    The validator is stateless; one instance is built at process start and
    shared by everything that needs it.
    """

    def validate_section(self, section: str, data: Any) -> SectionResult:
        """Validate one section by name (``meta``, ``steps``, ...)."""
        validators = {
            "meta": self.validate_meta,
            "steps": self.validate_steps,
            "dependencies": self.validate_dependencies,
            "test_coverage": self.validate_test_coverage,
            "acceptance_mapping": self.validate_acceptance_mapping,
        }
        if section not in validators:
            return SectionResult(valid=False, errors=[f"Unknown section: {section}"])
        return validators[section](data)

    def validate_meta(self, data: Any) -> SectionResult:
        return self._validate_model(MetaSchema, data, "Plan metadata")

    def validate_steps(self, data: Any) -> SectionResult:
        """Validate the step list; an empty list is invalid."""
        data = _dump(data)
        if data is None:
            return SectionResult(valid=False, errors=["Plan steps section is missing"])
        if not isinstance(data, list):
            return SectionResult(valid=False, errors=["Plan steps must be a list"])
        if not data:
            return SectionResult(valid=False, errors=["Plan must have at least one step"])

        errors: list[str] = []
        for index, step in enumerate(data):
            step_id = step.get("id") if isinstance(step, Mapping) else None
            try:
                StepSchema.model_validate(step)
            except SchemaError as e:
                errors.extend(_schema_errors(e, prefix=f"Step {index + 1} ({step_id or '?'})"))
        return SectionResult.from_errors(errors)

    def validate_steps_complete(self, data: Any) -> SectionResult:
        """Step rules plus the requirement that every step carries a complexity."""
        result = self.validate_steps(data)
        steps = _dump(data)
        if not isinstance(steps, list):
            return result

        missing = [
            str(step.get("id", "?"))
            for step in steps
            if isinstance(step, Mapping) and not step.get("complexity")
        ]
        errors = list(result.errors)
        if missing:
            errors.append(f"Steps missing complexity rating: {', '.join(missing)}")
        return SectionResult.from_errors(errors)

    def validate_dependencies(self, data: Any) -> SectionResult:
        """Validate dependency entries and reject cyclic step dependencies."""
        result = self._validate_model(DependenciesSchema, data, "Dependencies")
        if not result.valid:
            return result

        edges = [(dep["step_id"], dep["depends_on"]) for dep in _dump(data)["step_dependencies"]]
        cycle = find_dependency_cycle(edges)
        if cycle:
            return SectionResult(valid=False, errors=[f"Circular dependency detected: {' -> '.join(cycle)}"])
        return result

    def validate_test_coverage(self, data: Any) -> SectionResult:
        return self._validate_model(CoverageSchema, data, "Test coverage")

    def validate_acceptance_mapping(self, data: Any) -> SectionResult:
        result = self._validate_model(AcceptanceMappingSchema, data, "Acceptance mapping")
        if not result.valid:
            return result

        errors = [
            f'Acceptance criterion "{mapping["criterion_id"]}" has no implementing steps'
            for mapping in _dump(data)["mappings"]
            if not mapping.get("implementing_step_ids")
        ]
        return SectionResult.from_errors(errors)

    def validate_plan(self, plan: PlanLike | None) -> PlanValidationResult:
        """Validate every section, then cross-check step id references.

        A missing section is invalid. Cross-reference errors are attached to
        the section holding the dangling reference.
        """
        data = _as_dict(plan)
        result = PlanValidationResult(
            meta=self.validate_meta(data.get("meta")),
            steps=self.validate_steps(data.get("steps")),
            dependencies=self.validate_dependencies(data.get("dependencies")),
            test_coverage=self.validate_test_coverage(data.get("test_coverage")),
            acceptance_mapping=self.validate_acceptance_mapping(data.get("acceptance_mapping")),
        )

        steps = data.get("steps")
        if isinstance(steps, list) and steps:
            self._cross_check(data, result)
        return result

    def get_incomplete_sections(self, plan: PlanLike | None) -> list[IncompleteSection]:
        result = self.validate_plan(plan)
        return [IncompleteSection(name, section.errors) for name, section in result.sections() if not section.valid]

    def generate_validation_context(self, plan: PlanLike | None) -> str:
        """Render a markdown remediation narrative; empty when the plan is valid."""
        result = self.validate_plan(plan)
        if result.overall:
            return ""

        lines = [
            "## Plan Validation Issues",
            "",
            "The plan has the following issues that must be fixed before implementation can begin:",
            "",
        ]
        all_errors: list[str] = []
        for name, section in result.sections():
            if section.valid:
                continue
            lines.append(f"### {SECTION_NAMES[name]}")
            lines.extend(f"- {error}" for error in section.errors)
            lines.append("")
            all_errors.extend(section.errors)

        lines.extend(["### How to Fix", ""])
        lines.extend(f"- {hint}" for hint in self._guidance(all_errors))
        return "\n".join(lines).rstrip() + "\n"

    def create_validation_status(self, plan: PlanLike | None) -> ValidationStatus:
        """Summary for ``plan.validation_status``; only invalid sections carry errors."""
        result = self.validate_plan(plan)
        return ValidationStatus(checked_at=utc_now(), overall=result.overall, errors=result.errors_by_section())

    def is_plan_valid(self, plan: PlanLike | None) -> bool:
        if plan is None:
            return False
        return self.validate_plan(plan).overall

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_model(schema: type[_Schema], data: Any, label: str) -> SectionResult:
        data = _dump(data)
        if data is None:
            return SectionResult(valid=False, errors=[f"{label} section is missing"])
        try:
            schema.model_validate(data)
        except SchemaError as e:
            return SectionResult(valid=False, errors=_schema_errors(e))
        return SectionResult(valid=True)

    @staticmethod
    def _cross_check(data: dict[str, Any], result: PlanValidationResult) -> None:
        steps: Sequence[Mapping[str, Any]] = [step for step in data["steps"] if isinstance(step, Mapping)]
        step_ids = {step.get("id") for step in steps}

        for step in steps:
            parent_id = step.get("parent_id")
            if parent_id and parent_id not in step_ids:
                _add_error(result.steps, f'Step "{step.get("id")}" has orphaned parentId: {parent_id}')

        dependencies = data.get("dependencies")
        if isinstance(dependencies, Mapping):
            for dep in dependencies.get("step_dependencies") or []:
                if dep.get("step_id") not in step_ids:
                    _add_error(result.dependencies, f"Step dependency references unknown step: {dep.get('step_id')}")
                if dep.get("depends_on") not in step_ids:
                    _add_error(
                        result.dependencies, f"Step dependency references unknown dependency: {dep.get('depends_on')}"
                    )
            for external in dependencies.get("external_dependencies") or []:
                for step_id in external.get("required_by") or []:
                    if step_id not in step_ids:
                        _add_error(
                            result.dependencies,
                            f'External dependency "{external.get("name")}" references unknown step: {step_id}',
                        )

        coverage = data.get("test_coverage")
        if isinstance(coverage, Mapping):
            for entry in coverage.get("step_coverage") or []:
                if entry.get("step_id") not in step_ids:
                    _add_error(result.test_coverage, f"Test coverage references unknown step: {entry.get('step_id')}")

        acceptance = data.get("acceptance_mapping")
        if isinstance(acceptance, Mapping):
            for mapping in acceptance.get("mappings") or []:
                for step_id in mapping.get("implementing_step_ids") or []:
                    if step_id not in step_ids:
                        _add_error(
                            result.acceptance_mapping,
                            f'Acceptance mapping for "{mapping.get("criterion_id")}" references unknown step: {step_id}',
                        )

    @staticmethod
    def _guidance(errors: list[str]) -> list[str]:
        text = "\n".join(errors).lower()
        hints = []
        if "circular" in text:
            hints.append(
                "Break circular dependencies: a step cannot depend, directly or indirectly, on itself. "
                "Reorder or merge the steps involved."
            )
        if "orphaned" in text:
            hints.append("Every parentId must name an existing step id, or be null for a top-level step.")
        if "unknown step" in text or "unknown dependency" in text:
            hints.append("Only reference step ids that exist in the [PLAN_STEP] list.")
        if "description" in text:
            hints.append(
                f"Give every step a concrete description of {MIN_DESCRIPTION_LENGTH} to "
                f"{MAX_DESCRIPTION_LENGTH} characters explaining what changes and why."
            )
        if "placeholder" in text:
            hints.append("Replace placeholder text (TBD, TODO, [...]) with the actual content.")
        if "marker" in text:
            hints.append("Do not include protocol tags such as [PLAN_STEP] inside step titles or descriptions.")
        if "complexity" in text:
            hints.append("Rate every step's complexity as low, medium or high.")
        if "framework" in text:
            hints.append("Name the testing framework the project uses in [PLAN_TEST_COVERAGE].")
        if "no implementing steps" in text:
            hints.append("Map every acceptance criterion to at least one implementing step.")
        if "is missing" in text or "field required" in text:
            hints.append(
                "Emit every plan section: [PLAN_META], [PLAN_STEP] blocks, [PLAN_DEPENDENCIES], "
                "[PLAN_TEST_COVERAGE] and [PLAN_ACCEPTANCE_MAPPING]."
            )
        if not hints:
            hints.append("Address each listed error and re-emit the affected plan sections.")
        return hints


def _add_error(section: SectionResult, error: str) -> None:
    section.errors.append(error)
    section.valid = False
