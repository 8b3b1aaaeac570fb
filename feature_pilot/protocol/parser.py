"""
Marker protocol parser for agent output.

Translates the agent's free text into ``ParsedOutput``. The parser is pure:
it never reads or writes session state, and every caller derives its own
control-flow decision from the returned structure.

Recognized tags:
    [DECISION_NEEDED priority category file line]...[/DECISION_NEEDED]
    [PLAN_STEP id parent status complexity ...]...[/PLAN_STEP]
    [STEP_COMPLETE id="..."]...[/STEP_COMPLETE]   (or self-closing)
    [PLAN_FILE path="..."]
    [IMPLEMENTATION_COMPLETE]...[/IMPLEMENTATION_COMPLETE]
    [IMPLEMENTATION_STATUS]...[/IMPLEMENTATION_STATUS]
    [PR_CREATED]...[/PR_CREATED]
    [CI_STATUS status="passing|failing|pending"]...[/CI_STATUS]
    [PLAN_APPROVED]  [PR_APPROVED]  [CI_FAILED]
    [RETURN_TO_STAGE_2]...[/RETURN_TO_STAGE_2]
    [PLAN_META] [PLAN_DEPENDENCIES] [PLAN_TEST_COVERAGE] [PLAN_ACCEPTANCE_MAPPING]

Decision option lines are recognized only inside the "Option" sub-region
of a decision (from the first ``- Option X`` line onwards) or when flagged
``(recommended)``, so ordinary bullet prose in the question is not read as
a choice.

Example:
    >>> parser = MarkerProtocolParser()
    >>> result = parser.parse(agent_output)
    >>> if result.plan_file_path:
    ...     log.info("plan_written", path=result.plan_file_path)
"""

import re

from feature_pilot.models.domain import (
    AcceptanceCriterionMapping,
    ExternalDependency,
    PlanAcceptanceMapping,
    PlanDependencies,
    PlanMeta,
    PlanTestCoverage,
    StepCoverage,
    StepDependency,
)
from feature_pilot.protocol.heuristics import scan_informal_step_completions
from feature_pilot.protocol.tokenizer import MarkerToken, find_tokens, has_token
from feature_pilot.protocol.types import (
    DecisionOption,
    ParsedCIStatus,
    ParsedDecision,
    ParsedImplementationStatus,
    ParsedOutput,
    ParsedPlanSections,
    ParsedPlanStep,
    ParsedPRCreated,
    ParsedReturnToPlanning,
    ParsedStepComplete,
)

OPTION_PREFIX = re.compile(r"^-\s+\*?\*?Option\s+\w+", re.I)
OPTION_LINE = re.compile(r"^-\s+(?:\*?\*?Option\s+\w+:\s*\*?\*?\s*)?(.+?)(?:\s+\(recommended\))?$", re.I)
RECOMMENDED = re.compile(r"\s*\(recommended\)\s*", re.I)

PLAN_APPROVED_LINE = re.compile(r"^\[PLAN_APPROVED\]$", re.M)
STEP_SUMMARY_END = re.compile(r"\n\n|\[STEP_|\[IMPLEMENTATION")
TESTS_ADDED = re.compile(r"Tests added:\s*(.+)", re.I)
TESTS_PASSING = re.compile(r"Tests passing:\s*(yes|no|true|false)", re.I)
ALL_TESTS_PASSING = re.compile(r"All tests passing:\s*(yes|no|true|false)", re.I)
PR_BRANCH = re.compile(r"Branch:\s*(\S+)\s*(?:→|->)\s*(\S+)")

STEP_DEPENDENCY = re.compile(
    r"(?:^|\n)[ \t]*[-*]?[ \t]*(\S+)[ \t]+(?:->|depends[ \t]+on)[ \t]+([^\s:]+)(?:[ \t]*:[ \t]*(.+))?", re.I
)
EXTERNAL_SECTION = re.compile(r"external(?:\s+dependencies)?:(.*?)(?:\n\n|$)", re.I | re.S)
EXTERNAL_DEPENDENCY = re.compile(
    r"[-*]\s*(\S+)\s*\((\w+)\)(?:\s*@\s*([^\s:]+))?\s*:\s*(.+?)(?:\s*\[required\s*by:\s*([^\]]+)\])?$", re.I
)
COVERAGE_LINE = re.compile(r"(?:^|\n)[ \t]*[-*][ \t]*(\S+?)[ \t]*:[ \t]*(.+)")
COVERAGE_KEYS = {
    "framework",
    "requiredtesttypes",
    "required_test_types",
    "testtypes",
    "globalcoveragetarget",
    "coverage_target",
}
ACCEPTANCE_LINE = re.compile(
    r"(?:^|\n)[ \t]*[-*]?[ \t]*(\S+?)[ \t]*:[ \t]*(?:['\"]([^'\"]+)['\"]|([^\->\n]+?))[ \t]*->[ \t]*([^\[\n]+)"
    r"(?:[ \t]*\[(fully[ \t]*covered|partial)\])?",
    re.I,
)


def _optional_int(value: str | None) -> int | None:
    """Leading-integer parse; None when there is no leading integer."""
    match = re.match(r"\s*([+-]?\d+)", value or "")
    return int(match.group(1)) if match else None


def _int_or(value: str | None, default: int) -> int:
    parsed = _optional_int(value)
    return default if parsed is None else parsed


def _tests_added(content: str) -> list[str]:
    match = TESTS_ADDED.search(content)
    return _split_list(match.group(1), drop_none=True) if match else []


def _split_list(value: str | None, drop_none: bool = False) -> list[str]:
    if not value:
        return []
    items = [item.strip() for item in value.split(",")]
    return [item for item in items if item and not (drop_none and item.lower() == "none")]


def _yes_no(match: re.Match[str] | None, default: bool | None) -> bool | None:
    if match is None:
        return default
    return match.group(1).lower() in ("yes", "true")


def _field(content: str, *keys: str) -> str:
    """Value of the first ``key: value`` line found for any of the keys."""
    for key in keys:
        match = re.search(rf"(?<!\w){re.escape(key)}:\s*(.+)", content, re.I)
        if match:
            return match.group(1).strip()
    return ""


class MarkerProtocolParser:
    """Pure translator from agent output to ``ParsedOutput``.

    Args:
        informal_fallback: Scan for "Step N Complete" headings when formal
            ``[STEP_COMPLETE]`` tags are missing for a step.
    """

    def __init__(self, informal_fallback: bool = True) -> None:
        self.informal_fallback = informal_fallback

    def parse(self, text: str) -> ParsedOutput:
        """Parse every recognized marker in ``text``."""
        implementation = self._first_paired(text, "IMPLEMENTATION_COMPLETE")
        implementation_body = implementation.body.strip() if implementation else None

        return ParsedOutput(
            decisions=self.parse_decisions(text),
            plan_steps=self.parse_plan_steps(text),
            steps_completed=self.parse_steps_completed(text),
            plan_file_path=self.parse_plan_file(text),
            implementation_complete=has_token(text, "IMPLEMENTATION_COMPLETE"),
            implementation_summary=implementation_body,
            implementation_status=self.parse_implementation_status(text),
            all_tests_passing=_yes_no(ALL_TESTS_PASSING.search(implementation_body or ""), None),
            tests_added=_tests_added(implementation_body or ""),
            pr_created=self.parse_pr_created(text),
            plan_approved=bool(PLAN_APPROVED_LINE.search(text)),
            ci_status=self.parse_ci_status(text),
            ci_failed="[CI_FAILED]" in text,
            pr_approved="[PR_APPROVED]" in text,
            return_to_planning=self.parse_return_to_planning(text),
            plan_sections=self.parse_plan_sections(text),
            plan_mode_entered="[PLAN_MODE_ENTERED]" in text,
            plan_mode_exited="[PLAN_MODE_EXITED]" in text,
        )

    # ------------------------------------------------------------------
    # Decisions and plan steps
    # ------------------------------------------------------------------

    def parse_decisions(self, text: str) -> list[ParsedDecision]:
        """Parse ``[DECISION_NEEDED]`` blocks, discarding those without options."""
        decisions: list[ParsedDecision] = []

        for token in find_tokens(text, "DECISION_NEEDED", paired_only=True):
            lines = token.body.strip().split("\n")
            options_start = next(
                (index for index, line in enumerate(lines) if OPTION_PREFIX.match(line.strip())),
                -1,
            )

            question_lines: list[str] = []
            options: list[DecisionOption] = []
            for index, line in enumerate(lines):
                stripped = line.strip()
                in_options = options_start >= 0 and index >= options_start
                recommended = "(recommended)" in stripped.lower()

                if (in_options or recommended or OPTION_PREFIX.match(stripped)) and stripped.startswith("-"):
                    match = OPTION_LINE.match(stripped)
                    if match:
                        label = RECOMMENDED.sub(" ", match.group(1)).strip()
                        label = re.sub(r"^\*\*|\*\*$", "", label).strip()
                        options.append(DecisionOption(label=label, recommended=recommended))
                elif stripped:
                    question_lines.append(line)

            if not options:
                continue
            if not any(option.recommended for option in options):
                options[0].recommended = True

            decisions.append(
                ParsedDecision(
                    priority=_int_or(token.attrs.get("priority"), 3),
                    category=token.attrs.get("category") or "general",
                    question_text="\n".join(question_lines).strip(),
                    options=options,
                    file=token.attrs.get("file") or None,
                    line=_optional_int(token.attrs.get("line")),
                )
            )

        return decisions

    def parse_plan_steps(self, text: str) -> list[ParsedPlanStep]:
        """Parse ``[PLAN_STEP]`` blocks: first body line is the title."""
        steps: list[ParsedPlanStep] = []

        for token in find_tokens(text, "PLAN_STEP", paired_only=True):
            attrs = token.attrs
            lines = token.body.strip().split("\n")
            parent = attrs.get("parent")
            complexity = (attrs.get("complexity") or "").strip().lower()

            steps.append(
                ParsedPlanStep(
                    id=attrs.get("id", ""),
                    parent_id=None if not parent or parent == "null" else parent,
                    status=attrs.get("status") or "pending",
                    title=lines[0].strip() if lines else "",
                    description="\n".join(lines[1:]).strip(),
                    complexity=complexity if complexity in ("low", "medium", "high") else None,
                    acceptance_criteria_ids=_split_list(attrs.get("acceptanceCriteria")),
                    estimated_files=_split_list(attrs.get("estimatedFiles")),
                )
            )

        return steps

    # ------------------------------------------------------------------
    # Implementation progress
    # ------------------------------------------------------------------

    def parse_steps_completed(self, text: str) -> list[ParsedStepComplete]:
        """Parse step completions in order, one per step id.

        Paired tags come first, then self-closing tags whose summary runs to
        the next blank line or step/implementation tag, then (optionally)
        informal headings.
        """
        completed: list[ParsedStepComplete] = []
        seen: set[str] = set()
        tokens = [token for token in find_tokens(text, "STEP_COMPLETE") if token.attrs.get("id")]

        for token in tokens:
            if token.self_closing:
                continue
            step_id = token.attrs["id"]
            content = token.body.strip()
            seen.add(step_id)
            completed.append(
                ParsedStepComplete(
                    id=step_id,
                    summary=content,
                    tests_added=_tests_added(content),
                    tests_passing=_yes_no(TESTS_PASSING.search(content), True),
                )
            )

        for token in tokens:
            step_id = token.attrs["id"]
            if not token.self_closing or step_id in seen:
                continue
            remaining = text[token.end :]
            summary = STEP_SUMMARY_END.split(remaining, maxsplit=1)[0].strip()
            seen.add(step_id)
            completed.append(ParsedStepComplete(id=step_id, summary=summary or f"Step {step_id} completed"))

        if self.informal_fallback:
            completed.extend(scan_informal_step_completions(text, seen))

        return completed

    def parse_plan_file(self, text: str) -> str | None:
        token = next((t for t in find_tokens(text, "PLAN_FILE") if t.attrs.get("path")), None)
        return token.attrs["path"] if token else None

    def parse_implementation_status(self, text: str) -> ParsedImplementationStatus | None:
        token = self._first_paired(text, "IMPLEMENTATION_STATUS")
        if token is None:
            return None

        content = token.body
        return ParsedImplementationStatus(
            step_id=_field(content, "step_id"),
            status=_field(content, "status"),
            files_modified=_int_or(_field(content, "files_modified"), 0),
            tests_status=_field(content, "tests_status"),
            work_type=_field(content, "work_type"),
            progress=_int_or(_field(content, "progress"), 0),
            message=_field(content, "message"),
        )

    # ------------------------------------------------------------------
    # Pull request stages
    # ------------------------------------------------------------------

    def parse_pr_created(self, text: str) -> ParsedPRCreated | None:
        token = self._first_paired(text, "PR_CREATED")
        if token is None:
            return None

        content = token.body
        title = re.search(r"Title:\s*(.+)", content)
        branch = PR_BRANCH.search(content)
        url = re.search(r"URL:\s*(\S+)", content)
        return ParsedPRCreated(
            title=title.group(1).strip() if title else "",
            source_branch=branch.group(1) if branch else "",
            target_branch=branch.group(2) if branch else "",
            url=url.group(1).strip() if url else None,
        )

    def parse_ci_status(self, text: str) -> ParsedCIStatus | None:
        for token in find_tokens(text, "CI_STATUS", paired_only=True):
            status = token.attrs.get("status")
            if status in ("passing", "failing", "pending"):
                return ParsedCIStatus(status=status, checks=token.body.strip())
        return None

    def parse_return_to_planning(self, text: str) -> ParsedReturnToPlanning | None:
        token = self._first_paired(text, "RETURN_TO_STAGE_2")
        if token is None:
            return None

        content = token.body.strip()
        reason = re.search(r"Reason:\s*(.+)", content, re.I)
        return ParsedReturnToPlanning(reason=reason.group(1).strip() if reason else content)

    # ------------------------------------------------------------------
    # Composable plan sections
    # ------------------------------------------------------------------

    def parse_plan_sections(self, text: str) -> ParsedPlanSections:
        return ParsedPlanSections(
            meta=self.parse_plan_meta(text),
            dependencies=self.parse_plan_dependencies(text),
            test_coverage=self.parse_plan_test_coverage(text),
            acceptance_mapping=self.parse_plan_acceptance_mapping(text),
        )

    def parse_plan_meta(self, text: str) -> PlanMeta | None:
        token = self._first_paired(text, "PLAN_META")
        if token is None:
            return None

        content = token.body.strip()
        values: dict[str, object] = {
            "version": _field(content, "version") or "1.0.0",
            "session_id": _field(content, "sessionId", "session_id"),
            "is_approved": _field(content, "isApproved", "is_approved").lower() == "true",
            "review_count": _int_or(_field(content, "reviewCount", "review_count"), 0),
        }
        for key, aliases in (("created_at", ("createdAt", "created_at")), ("updated_at", ("updatedAt", "updated_at"))):
            raw = _field(content, *aliases)
            if raw:
                values[key] = raw
        try:
            return PlanMeta(**values)
        except ValueError:
            # Unparseable timestamps fall back to "now".
            values.pop("created_at", None)
            values.pop("updated_at", None)
            return PlanMeta(**values)

    def parse_plan_dependencies(self, text: str) -> PlanDependencies | None:
        token = self._first_paired(text, "PLAN_DEPENDENCIES")
        if token is None:
            return None

        content = token.body.strip()
        step_dependencies = [
            StepDependency(
                step_id=match.group(1),
                depends_on=match.group(2),
                reason=match.group(3).strip() if match.group(3) else None,
            )
            for match in STEP_DEPENDENCY.finditer(content)
        ]

        external_dependencies: list[ExternalDependency] = []
        section = EXTERNAL_SECTION.search(content)
        if section:
            for line in section.group(1).split("\n"):
                match = EXTERNAL_DEPENDENCY.search(line.strip())
                if match:
                    external_dependencies.append(
                        ExternalDependency(
                            name=match.group(1),
                            type=match.group(2),
                            version=match.group(3),
                            reason=match.group(4).strip(),
                            required_by=_split_list(match.group(5)),
                        )
                    )

        return PlanDependencies(step_dependencies=step_dependencies, external_dependencies=external_dependencies)

    def parse_plan_test_coverage(self, text: str) -> PlanTestCoverage | None:
        token = self._first_paired(text, "PLAN_TEST_COVERAGE")
        if token is None:
            return None

        content = token.body.strip()
        required = _field(content, "requiredTestTypes", "required_test_types", "testTypes")
        step_coverage = [
            StepCoverage(step_id=match.group(1), test_types=_split_list(match.group(2)))
            for match in COVERAGE_LINE.finditer(content)
            if match.group(1).lower() not in COVERAGE_KEYS
        ]
        return PlanTestCoverage(
            framework=_field(content, "framework") or "unknown",
            required_test_types=_split_list(required) or ["unit"],
            step_coverage=step_coverage,
            global_coverage_target=_optional_int(_field(content, "globalCoverageTarget", "coverage_target")),
        )

    def parse_plan_acceptance_mapping(self, text: str) -> PlanAcceptanceMapping | None:
        token = self._first_paired(text, "PLAN_ACCEPTANCE_MAPPING")
        if token is None:
            return None

        mappings = []
        for match in ACCEPTANCE_LINE.finditer(token.body.strip()):
            coverage = (match.group(5) or "").lower().replace("\t", " ")
            mappings.append(
                AcceptanceCriterionMapping(
                    criterion_id=match.group(1),
                    criterion_text=(match.group(2) or match.group(3) or "").strip(),
                    implementing_step_ids=_split_list(match.group(4)),
                    is_fully_covered=coverage.startswith("fully"),
                )
            )
        return PlanAcceptanceMapping(mappings=mappings)

    @staticmethod
    def _first_paired(text: str, name: str) -> MarkerToken | None:
        tokens = find_tokens(text, name, paired_only=True)
        return tokens[0] if tokens else None
