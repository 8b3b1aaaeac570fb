"""Tests for the production collaborators in feature_pilot.providers."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from feature_pilot.config.settings import AgentConfig
from feature_pilot.enums import NotificationEvent, StepStatus
from feature_pilot.exceptions import ExternalCommandError, SpawnError
from feature_pilot.models.domain import Plan, Session
from feature_pilot.prompts.renderer import PromptRenderer
from feature_pilot.providers.assessors import (
    ClaudeAffectedStepsAssessor,
    ClaudeTestRequirementAssessor,
    conservative_assessment,
)
from feature_pilot.providers.base import AgentRequest
from feature_pilot.providers.claude_cli import ClaudeCliRunner
from feature_pilot.providers.git_cli import GitCliVersionControl
from feature_pilot.providers.notifier import LoggingNotifier

AFFECTED_ANSWER = (
    "Looking at the failure, only the exporter is involved.\n"
    '{"affectedSteps": [{"stepId": "1", "status": "pending", "reason": "exporter broke CI"},'
    ' {"stepId": "9", "status": "pending"}, {"stepId": "2", "status": "maybe"}],'
    ' "unaffectedSteps": ["2", "7"], "summary": "The exporter broke CI"}'
)


@pytest.fixture
def plan(step_factory) -> Plan:
    return Plan(steps=[step_factory("1", StepStatus.COMPLETED), step_factory("2"), step_factory("3")])


def scripted_commands(responses: dict[tuple[str, ...], tuple[str, str, int]]):
    """Fake run_command answering by command prefix; unmatched commands succeed silently."""
    calls: list[tuple[str, ...]] = []

    async def fake(*args, cwd=None, check=True, timeout=None):
        calls.append(args)
        for prefix, result in responses.items():
            if args[: len(prefix)] == prefix:
                return result
        return "", "", 0

    return fake, calls


class TestAffectedStepsAssessor:
    """Tests for ClaudeAffectedStepsAssessor."""

    @pytest.mark.asyncio
    async def test_parses_verdict(self, session: Session, plan: Plan):
        """Test the verdict is read from surrounding prose and unknown steps are dropped."""
        assessor = ClaudeAffectedStepsAssessor(AgentConfig(), PromptRenderer())
        envelope = json.dumps({"type": "result", "result": AFFECTED_ANSWER})

        with patch("feature_pilot.providers.assessors.run_command", AsyncMock(return_value=(envelope, "", 0))) as run:
            assessment = await assessor.assess(session, plan, "CI checks failed")

        assert [(s.step_id, s.status, s.reason) for s in assessment.affected] == [
            ("1", "pending", "exporter broke CI"),
            ("2", "needs_review", ""),
        ]
        assert assessment.unaffected == ["3"]
        assert assessment.summary == "The exporter broke CI"

        args = run.await_args.args
        assert args[0] == "claude"
        assert args[args.index("--model") + 1] == "haiku"
        assert "CI checks failed" in args[-1]
        assert run.await_args.kwargs["cwd"] == session.project_path

    @pytest.mark.asyncio
    async def test_missing_executable_is_conservative(self, session: Session, plan: Plan):
        """Test a missing CLI marks every completed step for review."""
        assessor = ClaudeAffectedStepsAssessor(AgentConfig(command="no-such-agent"), PromptRenderer())

        with patch("feature_pilot.providers.assessors.run_command", AsyncMock(side_effect=FileNotFoundError())):
            assessment = await assessor.assess(session, plan, "CI checks failed")

        assert [(s.step_id, s.status) for s in assessment.affected] == [("1", "needs_review")]
        assert assessment.unaffected == ["2", "3"]
        assert assessment.summary.startswith("Agent executable not found: no-such-agent")

    @pytest.mark.asyncio
    async def test_answer_without_json(self, session: Session, plan: Plan):
        """Test prose without a verdict falls back."""
        assessor = ClaudeAffectedStepsAssessor(AgentConfig(), PromptRenderer())

        with patch(
            "feature_pilot.providers.assessors.run_command", AsyncMock(return_value=("I am not sure.", "", 0))
        ):
            assessment = await assessor.assess(session, plan, "reason")

        assert assessment.summary.startswith("No JSON verdict in assessment output")

    def test_conservative_assessment(self, plan: Plan):
        """Test the fallback notes why each step was marked."""
        assessment = conservative_assessment(plan, "Assessment timed out")

        assert assessment.affected[0].reason == "Assessment timed out - conservatively marking as needs_review"


class TestTestRequirementAssessor:
    """Tests for ClaudeTestRequirementAssessor."""

    @pytest.mark.asyncio
    async def test_parses_verdict(self, session: Session, plan: Plan):
        """Test a JSON verdict becomes a TestRequirement."""
        answer = (
            '{"required": true, "reason": "new export logic", "testTypes": ["unit"],'
            ' "existingFramework": "pytest", "suggestedCoverage": "CSV quoting"}'
        )
        assessor = ClaudeTestRequirementAssessor(AgentConfig(), PromptRenderer())

        with patch("feature_pilot.providers.assessors.run_command", AsyncMock(return_value=(answer, "", 0))):
            requirement = await assessor.assess(session, plan)

        assert requirement.required is True
        assert requirement.reason == "new export logic"
        assert requirement.test_types == ["unit"]
        assert requirement.existing_framework == "pytest"
        assert requirement.suggested_coverage == "CSV quoting"

    @pytest.mark.asyncio
    async def test_not_required(self, session: Session, plan: Plan):
        """Test documentation-only changes can skip tests."""
        answer = '{"required": false, "reason": "docs only"}'
        assessor = ClaudeTestRequirementAssessor(AgentConfig(), PromptRenderer())

        with patch("feature_pilot.providers.assessors.run_command", AsyncMock(return_value=(answer, "", 0))):
            requirement = await assessor.assess(session, plan)

        assert requirement.required is False
        assert requirement.existing_framework is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "result, error",
        [
            (("", "rate limited", 1), None),
            (None, TimeoutError()),
        ],
    )
    async def test_failure_defaults_to_required(self, session: Session, plan: Plan, result, error):
        """Test failed assessments require unit tests."""
        assessor = ClaudeTestRequirementAssessor(AgentConfig(), PromptRenderer())
        mock = AsyncMock(return_value=result, side_effect=error)

        with patch("feature_pilot.providers.assessors.run_command", mock):
            requirement = await assessor.assess(session, plan)

        assert requirement.required is True
        assert requirement.test_types == ["unit"]
        assert requirement.reason.endswith("defaulting to required")


class TestGitCliVersionControl:
    """Tests for GitCliVersionControl."""

    @pytest.mark.asyncio
    async def test_prepare_creates_branch_commits_and_pushes(self, session: Session):
        """Test a new branch is created, changes are committed and pushed."""
        fake, calls = scripted_commands(
            {
                ("git", "rev-parse", "--abbrev-ref"): ("main\n", "", 0),
                ("git", "rev-parse", "--verify"): ("", "", 1),
                ("git", "status"): (" M app/export.py\n", "", 0),
            }
        )

        with patch("feature_pilot.providers.git_cli.run_command", fake):
            await GitCliVersionControl().prepare_pull_request(session)

        assert calls == [
            ("git", "rev-parse", "--abbrev-ref", "HEAD"),
            ("git", "rev-parse", "--verify", "--quiet", "feature/add-csv-export"),
            ("git", "checkout", "-b", "feature/add-csv-export"),
            ("git", "add", "-A"),
            ("git", "status", "--porcelain"),
            ("git", "commit", "-m", "feat: Add CSV export"),
            ("git", "push", "-u", "origin", "feature/add-csv-export"),
        ]

    @pytest.mark.asyncio
    async def test_prepare_on_branch_without_changes(self, session: Session):
        """Test nothing is checked out or committed when already clean on the branch."""
        fake, calls = scripted_commands({("git", "rev-parse"): ("feature/add-csv-export\n", "", 0)})

        with patch("feature_pilot.providers.git_cli.run_command", fake):
            await GitCliVersionControl(remote="upstream").prepare_pull_request(session)

        assert [call[1] for call in calls] == ["rev-parse", "add", "status", "push"]
        assert calls[-1] == ("git", "push", "-u", "upstream", "feature/add-csv-export")

    @pytest.mark.asyncio
    async def test_push_failure(self, session: Session):
        """Test a failing command raises with its details."""
        fake, _ = scripted_commands(
            {
                ("git", "rev-parse"): ("feature/add-csv-export\n", "", 0),
                ("git", "push"): ("", "rejected: non-fast-forward", 1),
            }
        )

        with patch("feature_pilot.providers.git_cli.run_command", fake):
            with pytest.raises(ExternalCommandError) as exc_info:
                await GitCliVersionControl().prepare_pull_request(session)

        error = exc_info.value
        assert error.message == "git push failed"
        assert error.returncode == 1
        assert error.stderr == "rejected: non-fast-forward"

    @pytest.mark.asyncio
    async def test_git_missing(self, session: Session):
        """Test a missing git executable is an external command error."""
        with patch("feature_pilot.providers.git_cli.run_command", AsyncMock(side_effect=FileNotFoundError())):
            with pytest.raises(ExternalCommandError, match="git executable not found"):
                await GitCliVersionControl().prepare_pull_request(session)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "result, expected",
        [
            ((json.dumps({"url": "https://github.com/acme/app/pull/7", "state": "OPEN"}), "", 0),
             "https://github.com/acme/app/pull/7"),
            ((json.dumps({"url": "https://github.com/acme/app/pull/7", "state": "MERGED"}), "", 0), None),
            (("", "no pull requests found", 1), None),
            (("not json", "", 0), None),
        ],
    )
    async def test_find_pull_request(self, session: Session, result, expected):
        """Test only an open pull request counts as found."""
        with patch("feature_pilot.providers.git_cli.run_command", AsyncMock(return_value=result)) as run:
            assert await GitCliVersionControl().find_pull_request(session) == expected

        assert run.await_args.args[:4] == ("gh", "pr", "view", "feature/add-csv-export")

    @pytest.mark.asyncio
    async def test_find_without_gh(self, session: Session):
        """Test a missing gh executable means no pull request."""
        with patch("feature_pilot.providers.git_cli.run_command", AsyncMock(side_effect=FileNotFoundError())):
            assert await GitCliVersionControl().find_pull_request(session) is None


class TestClaudeCliRunner:
    """Tests for ClaudeCliRunner."""

    def _stream(self, lines: list[str], stderr: str = "", returncode: int = 0):
        async def fake(*args, on_line, cwd=None, timeout=None):
            for line in lines:
                await on_line(line)
            return stderr, returncode

        return fake

    def _request(self, chunks: list[tuple[str, bool]] | None = None, **kwargs) -> AgentRequest:
        on_stream = (lambda chunk, final: chunks.append((chunk, final))) if chunks is not None else None
        return AgentRequest(prompt="Implement step 1", working_dir="/repo", on_stream=on_stream, **kwargs)

    def test_build_command(self):
        """Test every request option maps to a CLI flag."""
        runner = ClaudeCliRunner(AgentConfig(model="sonnet"))
        request = self._request(conversation_handle="c-1", allowed_tools=["Read", "Edit"], skip_permissions=True)

        assert runner.build_command(request) == [
            "claude",
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            "sonnet",
            "--resume",
            "c-1",
            "--allowedTools",
            "Read,Edit",
            "--dangerously-skip-permissions",
            "-p",
            "Implement step 1",
        ]

    def test_minimal_command(self):
        """Test optional flags are left out."""
        command = ClaudeCliRunner(AgentConfig()).build_command(self._request())

        assert "--resume" not in command
        assert "--model" not in command
        assert "--dangerously-skip-permissions" not in command

    @pytest.mark.asyncio
    async def test_streams_and_collects_result(self):
        """Test assistant text is streamed and the result event is returned."""
        lines = [
            json.dumps({"type": "system", "subtype": "init"}),
            json.dumps(
                {"type": "assistant", "message": {"content": [{"type": "text", "text": "Working"}, {"type": "tool_use"}]}}
            ),
            "",
            "plain text",
            json.dumps(
                {"type": "result", "result": "[STEP_COMPLETE id=\"1\"]", "session_id": "s-1", "total_cost_usd": 0.25}
            ),
        ]
        chunks: list[tuple[str, bool]] = []

        with patch("feature_pilot.providers.claude_cli.stream_command", self._stream(lines)):
            result = await ClaudeCliRunner(AgentConfig()).invoke(self._request(chunks))

        assert chunks == [("Working", False), ("plain text\n", False), ("", True)]
        assert result.output == '[STEP_COMPLETE id="1"]'
        assert result.conversation_handle == "s-1"
        assert result.cost_usd == 0.25
        assert result.is_error is False

    @pytest.mark.asyncio
    async def test_error_result(self):
        """Test a failing run with a result event reports the error."""
        lines = [json.dumps({"type": "result", "result": "", "is_error": True})]

        with patch("feature_pilot.providers.claude_cli.stream_command", self._stream(lines, "auth failed", 1)):
            result = await ClaudeCliRunner(AgentConfig()).invoke(self._request())

        assert result.is_error is True
        assert result.error == "auth failed"

    @pytest.mark.asyncio
    async def test_missing_result_event(self):
        """Test a clean exit without a result event is an error result."""
        lines = [json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "partial"}]}})]

        with patch("feature_pilot.providers.claude_cli.stream_command", self._stream(lines)):
            result = await ClaudeCliRunner(AgentConfig()).invoke(self._request())

        assert result.is_error is True
        assert result.output == "partial"
        assert result.error == "Agent produced no result event"

    @pytest.mark.asyncio
    async def test_crash_without_result(self):
        """Test a non-zero exit without a result event raises SpawnError."""
        with patch("feature_pilot.providers.claude_cli.stream_command", self._stream([], "segfault", 139)):
            with pytest.raises(SpawnError, match="exited with code 139: segfault"):
                await ClaudeCliRunner(AgentConfig()).invoke(self._request())

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, message",
        [(FileNotFoundError(), "Agent executable not found: claude"), (TimeoutError(), "Agent timed out after 900s")],
    )
    async def test_start_failures(self, error, message):
        """Test missing executables and timeouts become SpawnError."""
        with patch("feature_pilot.providers.claude_cli.stream_command", AsyncMock(side_effect=error)):
            with pytest.raises(SpawnError) as exc_info:
                await ClaudeCliRunner(AgentConfig()).invoke(self._request())

        assert exc_info.value.message == message


class TestLoggingNotifier:
    """Tests for LoggingNotifier."""

    @pytest.mark.asyncio
    async def test_events_logged_with_payload(self):
        """Test events become structured log lines carrying their payload."""
        with patch("feature_pilot.providers.notifier.log", MagicMock()) as log:
            await LoggingNotifier().notify("p", "f", NotificationEvent.STAGE_CHANGED, {"to_stage": 2})

        log.info.assert_called_once_with("notification", kind="stage.changed", project_id="p", feature_id="f", to_stage=2)

    @pytest.mark.asyncio
    async def test_agent_output_is_debug_only(self):
        """Test streamed output is not logged with its payload."""
        with patch("feature_pilot.providers.notifier.log", MagicMock()) as log:
            await LoggingNotifier().notify("p", "f", NotificationEvent.AGENT_OUTPUT, {"chunk": "x" * 1000})

        log.info.assert_not_called()
        log.debug.assert_called_once_with("notification", kind=str(NotificationEvent.AGENT_OUTPUT), project_id="p",
                                          feature_id="f")
