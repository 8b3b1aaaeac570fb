"""CLI entry point for feature-pilot."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TextIO

import click
import structlog

from feature_pilot.config.settings import FeaturePilotSettings
from feature_pilot.engine.execution_lock import ExecutionLock
from feature_pilot.engine.invoker import AgentInvoker
from feature_pilot.engine.orchestrator import WorkflowOrchestrator
from feature_pilot.engine.recovery import RecoverySweep
from feature_pilot.engine.result_handler import ResultHandler
from feature_pilot.engine.state_verification import get_step_counts, get_unanswered_questions
from feature_pilot.engine.step_executor import StepExecutionEngine
from feature_pilot.engine.supervisor import TaskSupervisor
from feature_pilot.engine.transitions import FinalAction
from feature_pilot.enums import RuntimeStatus
from feature_pilot.exceptions import ConfigurationError, FeaturePilotError
from feature_pilot.prompts.renderer import STATUS_ICONS, PromptRenderer
from feature_pilot.protocol.parser import MarkerProtocolParser
from feature_pilot.providers.assessors import ClaudeAffectedStepsAssessor, ClaudeTestRequirementAssessor
from feature_pilot.providers.base import Notifier, NullHeuristicExtractor, PassThroughDecisionValidator
from feature_pilot.providers.claude_cli import ClaudeCliRunner
from feature_pilot.providers.git_cli import GitCliVersionControl
from feature_pilot.providers.notifier import LoggingNotifier
from feature_pilot.storage.document_store import DocumentStore
from feature_pilot.storage.session_repository import SessionRepository
from feature_pilot.utils.logging_config import configure_logging
from feature_pilot.validation.completion import PlanCompletionChecker
from feature_pilot.validation.plan_validator import PlanValidator

log = structlog.get_logger(__name__)


@dataclass
class Workflow:
    """The wired-up core, as used by one CLI invocation."""

    repository: SessionRepository
    orchestrator: WorkflowOrchestrator
    supervisor: TaskSupervisor
    recovery: RecoverySweep


def create_workflow(settings: FeaturePilotSettings, notifier: Notifier | None = None) -> Workflow:
    """Wire the core with the CLI-backed collaborators.

    Args:
        settings: Loaded settings
        notifier: Event channel; defaults to structured log lines

    Returns:
        Workflow ready to drive sessions
    """
    notifier = notifier or LoggingNotifier()
    policy = settings.policy

    repository = SessionRepository(DocumentStore(settings.data_dir))
    parser = MarkerProtocolParser()
    renderer = PromptRenderer()
    validator = PlanValidator()
    handler = ResultHandler(repository, notifier, parser)
    invoker = AgentInvoker(repository, ClaudeCliRunner(settings.agent), parser, handler, notifier, policy)
    engine = StepExecutionEngine(
        repository,
        invoker,
        renderer,
        handler,
        NullHeuristicExtractor(),
        notifier,
        ExecutionLock(timeout_seconds=policy.execution_lock_timeout_minutes * 60),
        policy,
    )
    orchestrator = WorkflowOrchestrator(
        repository=repository,
        invoker=invoker,
        engine=engine,
        handler=handler,
        renderer=renderer,
        notifier=notifier,
        decision_validator=PassThroughDecisionValidator(),
        vcs=GitCliVersionControl(),
        affected_steps_assessor=ClaudeAffectedStepsAssessor(settings.agent, renderer),
        test_requirement_assessor=ClaudeTestRequirementAssessor(settings.agent, renderer),
        validator=validator,
        completion_checker=PlanCompletionChecker(validator),
        policy=policy,
    )
    supervisor = TaskSupervisor(repository, notifier)
    recovery = RecoverySweep(repository, orchestrator, supervisor, policy)
    return Workflow(repository=repository, orchestrator=orchestrator, supervisor=supervisor, recovery=recovery)


@click.group()
@click.option("--config", default=None, help="Path to configuration file (defaults to environment settings)")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """feature-pilot: Drive a coding agent from feature idea to merged pull request."""
    configure_logging(log_level)

    try:
        settings = FeaturePilotSettings.from_yaml(config) if config else FeaturePilotSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


def _run(ctx: click.Context, action: Callable[[Workflow], Awaitable[int | None]], event: str) -> None:
    """Run an async command body and map failures to exit codes."""
    try:
        workflow = create_workflow(ctx.obj["settings"])
        exit_code = asyncio.run(action(workflow))
    except FeaturePilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{event}_unexpected", exc_info=True)
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


async def _report_runtime(workflow: Workflow, project_id: str, feature_id: str) -> int:
    """Print where a session ended up after a background pass; 1 if it failed."""
    session = await workflow.repository.get(project_id, feature_id)
    runtime = await workflow.repository.get_runtime(project_id, feature_id)
    click.echo(f"Stage {int(session.current_stage)} ({session.status}) - {runtime.status}: {runtime.last_action}")
    if runtime.status == RuntimeStatus.ERROR:
        click.echo(f"Error: {runtime.last_error}", err=True)
        return 1
    return 0


def _parse_answer(raw: str) -> tuple[str, Any]:
    question_id, separator, value = raw.partition("=")
    if not separator or not question_id:
        raise click.BadParameter(f"Expected QUESTION_ID=VALUE, got: {raw}")
    try:
        return question_id, json.loads(value)
    except json.JSONDecodeError:
        return question_id, value


@cli.command()
@click.option("--project-path", default=".", type=click.Path(exists=True, file_okay=False), help="Project checkout")
@click.option("--title", required=True, help="Feature title")
@click.option("--description", default="", help="Feature description")
@click.option("--criterion", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--base-branch", default="main", help="Branch the pull request targets")
@click.pass_context
def create(
    ctx: click.Context,
    project_path: str,
    title: str,
    description: str,
    criteria: tuple[str, ...],
    base_branch: str,
) -> None:
    """Create a session for a new feature."""

    async def action(workflow: Workflow) -> None:
        session = await workflow.repository.create_session(
            project_path, title, description, list(criteria), base_branch
        )
        click.echo(f"Created session {session.project_id}/{session.feature_id}")
        click.echo(f"Branch: {session.feature_branch} -> {session.base_branch}")

    _run(ctx, action, "create")


@cli.command()
@click.argument("project_id")
@click.argument("feature_id")
@click.option("--context", default=None, help="Extra context for the agent")
@click.pass_context
def advance(ctx: click.Context, project_id: str, feature_id: str, context: str | None) -> None:
    """Run the session's current stage."""

    async def action(workflow: Workflow) -> int:
        await workflow.repository.get(project_id, feature_id)
        workflow.supervisor.spawn(
            workflow.orchestrator.advance(project_id, feature_id, context), project_id, feature_id
        )
        await workflow.supervisor.drain()
        return await _report_runtime(workflow, project_id, feature_id)

    _run(ctx, action, "advance")


@cli.command()
@click.argument("project_id")
@click.argument("feature_id")
@click.option("--answer", "-a", "answers", multiple=True, required=True, help="QUESTION_ID=VALUE (repeatable)")
@click.pass_context
def answer(ctx: click.Context, project_id: str, feature_id: str, answers: tuple[str, ...]) -> None:
    """Answer questions; the stage resumes once its batch is complete.

    Values are decoded as JSON when possible, so multiple-choice answers can
    be given as '["a", "b"]'.
    """
    parsed = dict(_parse_answer(raw) for raw in answers)

    async def action(workflow: Workflow) -> int:
        outcome = await workflow.orchestrator.answer_questions(project_id, feature_id, parsed)
        click.echo(f"Recorded {len(parsed)} answer(s)")
        if outcome is None:
            return 0
        return await _report_runtime(workflow, project_id, feature_id)

    _run(ctx, action, "answer")


@cli.command()
@click.argument("project_id")
@click.argument("feature_id")
@click.pass_context
def status(ctx: click.Context, project_id: str, feature_id: str) -> None:
    """Show stage, runtime status, plan progress and open questions."""

    async def action(workflow: Workflow) -> None:
        repository = workflow.repository
        session = await repository.get(project_id, feature_id)
        runtime = await repository.get_runtime(project_id, feature_id)
        plan = await repository.get_plan(project_id, feature_id)
        questions = await repository.get_questions(project_id, feature_id)

        click.echo(f"\n{session.title} ({session.project_id}/{session.feature_id})\n")
        click.echo(f"Stage: {int(session.current_stage)} ({session.status})")
        click.echo(f"Runtime: {runtime.status} - {runtime.last_action} at {runtime.last_action_at.isoformat()}")
        if runtime.last_error:
            click.echo(f"Last error: {runtime.last_error}")
        if session.pr_url:
            click.echo(f"Pull request: {session.pr_url}")

        counts = get_step_counts(plan.steps)
        approved = "approved" if plan.is_approved else "not approved"
        click.echo(f"\nPlan v{plan.plan_version} ({approved}): {counts.completed}/{counts.total} steps done")
        for step in plan.steps:
            click.echo(f"  {STATUS_ICONS.get(str(step.status), '[ ]')} {step.id}: {step.title}")

        unanswered = get_unanswered_questions(questions)
        if unanswered:
            click.echo(f"\nOpen questions ({len(unanswered)}):")
            for question in unanswered:
                required = " (required)" if question.is_required else ""
                click.echo(f"  {question.id}{required}: {question.question_text}")
                for option in question.options:
                    marker = " *" if option.recommended else ""
                    click.echo(f"      - {option.value}: {option.label}{marker}")

    _run(ctx, action, "status")


@cli.command()
@click.argument("project_id")
@click.argument("feature_id")
@click.pass_context
def retry(ctx: click.Context, project_id: str, feature_id: str) -> None:
    """Clear a stuck invocation and re-run the current stage."""

    async def action(workflow: Workflow) -> int:
        await workflow.repository.get(project_id, feature_id)
        workflow.supervisor.spawn(workflow.orchestrator.retry_stage(project_id, feature_id), project_id, feature_id)
        await workflow.supervisor.drain()
        return await _report_runtime(workflow, project_id, feature_id)

    _run(ctx, action, "retry")


@cli.command()
@click.pass_context
def recover(ctx: click.Context) -> None:
    """Resume stages interrupted by a crash or restart."""

    async def action(workflow: Workflow) -> None:
        report = await workflow.recovery.sweep()
        click.echo(f"Resuming {len(report.resumed)} session(s)")
        for key in report.resumed:
            click.echo(f"  - {key}")
        await workflow.supervisor.drain()

    _run(ctx, action, "recover")


@cli.command("validate-plan")
@click.argument("project_id")
@click.argument("feature_id")
@click.pass_context
def validate_plan(ctx: click.Context, project_id: str, feature_id: str) -> None:
    """Check the session's plan sections and print remediation guidance."""

    async def action(workflow: Workflow) -> int:
        plan = await workflow.repository.get_plan(project_id, feature_id)
        validator = workflow.orchestrator.validator
        if validator.is_plan_valid(plan):
            click.echo("Plan is valid")
            return 0
        click.echo(validator.generate_validation_context(plan))
        return 1

    _run(ctx, action, "validate_plan")


@cli.command()
@click.argument("source", type=click.File("r"), default="-")
def parse(source: TextIO) -> None:
    """Parse agent output (a file, or stdin) and print the recognized markers as JSON."""
    parsed = MarkerProtocolParser().parse(source.read())
    click.echo(json.dumps(parsed.to_dict(), indent=2, default=str))


@cli.command("final-action")
@click.argument("project_id")
@click.argument("feature_id")
@click.argument("choice", type=click.Choice([action.value for action in FinalAction]))
@click.option("--feedback", default=None, help="Requested changes (request_changes only)")
@click.pass_context
def final_action(ctx: click.Context, project_id: str, feature_id: str, choice: str, feedback: str | None) -> None:
    """Merge, request changes or re-review a session in final approval."""

    async def action(workflow: Workflow) -> int:
        await workflow.orchestrator.final_action(project_id, feature_id, FinalAction(choice), feedback)
        return await _report_runtime(workflow, project_id, feature_id)

    _run(ctx, action, "final_action")


if __name__ == "__main__":
    cli()
