"""Sandboxed Jinja2 rendering of agent prompts.

Every prompt the workflow sends to the agent is a template under
``prompts/templates``. Templates receive domain models directly and only
read from them; the sandbox prevents a template from calling anything with
side effects, and ``StrictUndefined`` turns a misspelled variable into an
error instead of an empty string in the prompt.

Example:
    >>> renderer = PromptRenderer()
    >>> prompt = renderer.discovery_prompt(session)
"""

from pathlib import Path
from typing import Any, cast

from jinja2 import FileSystemLoader, StrictUndefined, TemplateNotFound
from jinja2.sandbox import SandboxedEnvironment

from feature_pilot.models.domain import Plan, PlanStep, Session

STATUS_ICONS = {
    "pending": "[ ]",
    "in_progress": "[~]",
    "completed": "[x]",
    "blocked": "[!]",
    "skipped": "[-]",
    "needs_review": "[?]",
}


class PromptRenderer:
    """Render prompt templates with a hardened Jinja2 environment.

    Attributes:
        template_dir: Resolved directory the templates are loaded from
        env: The sandboxed environment

    Args:
        template_dir: Template root; defaults to the packaged templates

    Raises:
        ValueError: If ``template_dir`` does not exist or is not a directory
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        if template_dir is None:
            template_dir = Path(__file__).parent / "templates"

        self.template_dir = template_dir.resolve()
        if not self.template_dir.is_dir():
            raise ValueError(f"Template directory does not exist: {self.template_dir}")

        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["status_icon"] = lambda status: STATUS_ICONS.get(str(status), "[ ]")

    def validate_template_path(self, template_path: str) -> Path:
        """Resolve a template path, refusing anything outside the template root.

        Raises:
            ValueError: If the path escapes the template directory
            TemplateNotFound: If the template does not exist
        """
        requested = (self.template_dir / template_path).resolve()
        try:
            requested.relative_to(self.template_dir)
        except ValueError as e:
            raise ValueError(f"Template path escapes template directory: {template_path}") from e

        if not requested.exists():
            raise TemplateNotFound(template_path)
        return requested

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render one template.

        Raises:
            TemplateNotFound: If the template does not exist
            jinja2.UndefinedError: If the template uses a missing variable
        """
        self.validate_template_path(template_path)
        template = self.env.get_template(template_path)
        return cast(str, template.render(**context))

    def list_templates(self, pattern: str = "*.j2") -> list[str]:
        return sorted(
            str(path.relative_to(self.template_dir)) for path in self.template_dir.glob(pattern) if path.is_file()
        )

    # ------------------------------------------------------------------
    # Stage prompts
    # ------------------------------------------------------------------

    def discovery_prompt(self, session: Session, context: str | None = None) -> str:
        return self.render("discovery.md.j2", {"session": session, "context": context})

    def planning_prompt(
        self,
        session: Session,
        plan: Plan,
        iteration: int,
        max_iterations: int,
        context: str | None = None,
    ) -> str:
        """Plan review prompt; ``context`` carries remediation or a replanning reason."""
        return self.render(
            "planning.md.j2",
            {
                "session": session,
                "plan": plan,
                "iteration": iteration,
                "max_iterations": max_iterations,
                "context": context,
            },
        )

    def step_prompt(
        self,
        session: Session,
        plan: Plan,
        step: PlanStep,
        attempt: int = 1,
        context: str | None = None,
    ) -> str:
        completed = [other for other in plan.steps if other.status == "completed"]
        return self.render(
            "implementation_step.md.j2",
            {
                "session": session,
                "plan": plan,
                "step": step,
                "completed_steps": completed,
                "attempt": attempt,
                "context": context,
                "test_requirement": plan.test_requirement,
            },
        )

    def pr_creation_prompt(self, session: Session, plan: Plan, context: str | None = None) -> str:
        return self.render("pr_creation.md.j2", {"session": session, "plan": plan, "context": context})

    def pr_review_prompt(self, session: Session, plan: Plan, context: str | None = None) -> str:
        return self.render("pr_review.md.j2", {"session": session, "plan": plan, "context": context})

    # ------------------------------------------------------------------
    # Assessment prompts
    # ------------------------------------------------------------------

    def affected_steps_prompt(self, session: Session, plan: Plan, reason: str) -> str:
        return self.render("assess_affected_steps.md.j2", {"session": session, "plan": plan, "reason": reason})

    def test_requirement_prompt(self, session: Session, plan: Plan) -> str:
        return self.render("assess_test_requirement.md.j2", {"session": session, "plan": plan})
