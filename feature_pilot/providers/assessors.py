"""Cheap single-shot assessments run through the agent CLI.

Both assessors ask a small model for a JSON verdict and never raise: a
missing executable, a timeout, a non-zero exit or an unparseable answer all
fall back to the conservative verdict (tests required; every completed step
needs review).
"""

import json
import re
from typing import Any

import structlog

from feature_pilot.config.settings import AgentConfig
from feature_pilot.enums import StepStatus
from feature_pilot.models.domain import Plan, Session, TestRequirement
from feature_pilot.prompts.renderer import PromptRenderer
from feature_pilot.providers.base import (
    AffectedStep,
    AffectedStepsAssessment,
    AffectedStepsAssessor,
    TestRequirementAssessor,
)
from feature_pilot.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

ASSESSMENT_TOOLS = "Read,Glob,Grep,WebFetch,WebSearch"

AFFECTED_STEPS_JSON = re.compile(r"\{[\s\S]*\"affectedSteps\"[\s\S]*\}")
TEST_REQUIREMENT_JSON = re.compile(r"\{[\s\S]*?\"required\"[\s\S]*?\"reason\"[\s\S]*?\}")


class AssessmentFailed(Exception):
    """Internal signal that an assessment must fall back."""


class _CliAssessor:
    def __init__(self, config: AgentConfig, renderer: PromptRenderer) -> None:
        self.config = config
        self.renderer = renderer

    async def _ask(self, prompt: str, cwd: str) -> str:
        """Run one assessment and return the model's text answer.

        Raises:
            AssessmentFailed: If the CLI could not produce an answer
        """
        try:
            stdout, stderr, returncode = await run_command(
                self.config.command,
                "--print",
                "--output-format",
                "json",
                "--model",
                self.config.assessment_model,
                "--allowedTools",
                ASSESSMENT_TOOLS,
                "-p",
                prompt,
                cwd=cwd,
                check=False,
                timeout=self.config.assessment_timeout_seconds,
            )
        except FileNotFoundError as e:
            raise AssessmentFailed(f"Agent executable not found: {self.config.command}") from e
        except TimeoutError as e:
            raise AssessmentFailed("Assessment timed out") from e

        if returncode != 0:
            raise AssessmentFailed(f"Assessment exited with code {returncode}: {stderr.strip()[:200]}")

        try:
            envelope = json.loads(stdout)
        except json.JSONDecodeError:
            return stdout
        if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
            return envelope["result"]
        return stdout


def _extract(pattern: re.Pattern[str], text: str) -> dict[str, Any]:
    match = pattern.search(text)
    if not match:
        raise AssessmentFailed("No JSON verdict in assessment output")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AssessmentFailed("Assessment verdict is not valid JSON") from e
    if not isinstance(data, dict):
        raise AssessmentFailed("Assessment verdict is not an object")
    return data


class ClaudeAffectedStepsAssessor(_CliAssessor, AffectedStepsAssessor):
    """Narrow a review failure down to the steps it invalidates.

    Args:
        config: Agent section of the settings
        renderer: Prompt renderer
    """

    async def assess(self, session: Session, plan: Plan, reason: str) -> AffectedStepsAssessment:
        try:
            answer = await self._ask(self.renderer.affected_steps_prompt(session, plan, reason), session.project_path)
            assessment = self.parse(answer, plan)
        except AssessmentFailed as e:
            log.warning("affected_steps_assessment_failed", feature_id=session.feature_id, error=str(e))
            return conservative_assessment(plan, str(e))

        log.info(
            "affected_steps_assessed",
            feature_id=session.feature_id,
            affected=[step.step_id for step in assessment.affected],
        )
        return assessment

    @staticmethod
    def parse(answer: str, plan: Plan) -> AffectedStepsAssessment:
        """Read the verdict, dropping step ids that are not in the plan.

        Raises:
            AssessmentFailed: If the answer holds no usable verdict
        """
        data = _extract(AFFECTED_STEPS_JSON, answer)
        known = {step.id for step in plan.steps}

        affected = []
        for item in data.get("affectedSteps") or []:
            if not isinstance(item, dict) or item.get("stepId") not in known:
                continue
            status = "pending" if item.get("status") == "pending" else "needs_review"
            affected.append(AffectedStep(step_id=item["stepId"], status=status, reason=str(item.get("reason", ""))))

        affected_ids = {step.step_id for step in affected}
        unaffected = [
            step_id for step_id in data.get("unaffectedSteps") or [] if step_id in known and step_id not in affected_ids
        ]
        unaffected.extend(step.id for step in plan.steps if step.id not in affected_ids and step.id not in unaffected)
        return AffectedStepsAssessment(affected=affected, unaffected=unaffected, summary=str(data.get("summary", "")))


def conservative_assessment(plan: Plan, reason: str) -> AffectedStepsAssessment:
    """Every completed step needs review; the others are left alone."""
    note = f"{reason} - conservatively marking as needs_review"
    affected = [
        AffectedStep(step_id=step.id, status="needs_review", reason=note)
        for step in plan.steps
        if step.status == StepStatus.COMPLETED
    ]
    return AffectedStepsAssessment(
        affected=affected,
        unaffected=[step.id for step in plan.steps if step.status != StepStatus.COMPLETED],
        summary=f"{reason} - all completed steps marked for review",
    )


class ClaudeTestRequirementAssessor(_CliAssessor, TestRequirementAssessor):
    """Decide whether the feature needs tests before a pull request."""

    async def assess(self, session: Session, plan: Plan) -> TestRequirement:
        try:
            answer = await self._ask(self.renderer.test_requirement_prompt(session, plan), session.project_path)
            data = _extract(TEST_REQUIREMENT_JSON, answer)
        except AssessmentFailed as e:
            log.warning("test_requirement_assessment_failed", feature_id=session.feature_id, error=str(e))
            return TestRequirement(required=True, reason=f"{e} - defaulting to required", test_types=["unit"])

        requirement = TestRequirement(
            required=bool(data.get("required", True)),
            reason=str(data.get("reason", "")),
            test_types=[str(kind) for kind in data.get("testTypes") or []],
            existing_framework=data.get("existingFramework") or None,
            suggested_coverage=str(data.get("suggestedCoverage") or ""),
        )
        log.info("test_requirement_assessed", feature_id=session.feature_id, required=requirement.required)
        return requirement
