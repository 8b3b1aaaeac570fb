"""Agent runner that drives the ``claude`` CLI in non-interactive mode.

The CLI is started with ``--output-format stream-json`` so that assistant
text can be forwarded while the agent is still working. Each stdout line is
one JSON event; the final ``result`` event carries the complete output, the
conversation id used for ``--resume``, and the cost.
"""

import inspect
import json
from typing import Any

import structlog

from feature_pilot.config.settings import AgentConfig
from feature_pilot.exceptions import SpawnError
from feature_pilot.providers.base import AgentRequest, AgentResult, AgentRunner
from feature_pilot.utils.async_subprocess import stream_command

log = structlog.get_logger(__name__)


class ClaudeCliRunner(AgentRunner):
    """Run the Claude Code CLI as a subprocess.

    Args:
        config: Agent section of the settings (command, model, timeout)
    """

    def __init__(self, config: AgentConfig) -> None:
        self.config = config

    def build_command(self, request: AgentRequest) -> list[str]:
        args = [self.config.command, "--print", "--output-format", "stream-json", "--verbose"]

        if self.config.model:
            args.extend(["--model", self.config.model])
        if request.conversation_handle:
            args.extend(["--resume", request.conversation_handle])
        if request.allowed_tools:
            args.extend(["--allowedTools", ",".join(request.allowed_tools)])
        if request.skip_permissions:
            args.append("--dangerously-skip-permissions")

        args.extend(["-p", request.prompt])
        return args

    async def invoke(self, request: AgentRequest) -> AgentResult:
        """Run the CLI and collect its result event.

        Raises:
            SpawnError: If the executable is missing, the run times out, or
                the process exits without producing a result
        """
        command = self.build_command(request)
        collected: list[str] = []
        final: dict[str, Any] = {}

        async def on_line(line: str) -> None:
            if not line.strip():
                return
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                collected.append(line)
                await self._emit(request, line + "\n")
                return

            if not isinstance(event, dict):
                return
            if event.get("type") == "result":
                final.update(event)
                return
            text = _assistant_text(event)
            if text:
                collected.append(text)
                await self._emit(request, text)

        log.info(
            "agent_invocation_started",
            cwd=request.working_dir,
            resume=bool(request.conversation_handle),
            prompt_length=len(request.prompt),
        )
        try:
            stderr, returncode = await stream_command(
                *command,
                on_line=on_line,
                cwd=request.working_dir,
                timeout=self.config.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise SpawnError(f"Agent executable not found: {self.config.command}") from e
        except TimeoutError as e:
            raise SpawnError(f"Agent timed out after {self.config.timeout_seconds:.0f}s") from e

        await self._emit(request, "", final=True)

        if not final:
            if returncode != 0:
                raise SpawnError(f"Agent exited with code {returncode}: {stderr.strip()[:500]}")
            log.warning("agent_result_event_missing", returncode=returncode)
            return AgentResult(output="".join(collected), is_error=True, error="Agent produced no result event")

        is_error = bool(final.get("is_error")) or returncode != 0
        output = final.get("result")
        result = AgentResult(
            output=output if isinstance(output, str) else "".join(collected),
            conversation_handle=final.get("session_id"),
            cost_usd=float(final.get("total_cost_usd") or final.get("cost_usd") or 0.0),
            is_error=is_error,
            error=final.get("error") or (stderr.strip() or None if is_error else None),
        )
        log.info(
            "agent_invocation_finished",
            returncode=returncode,
            is_error=result.is_error,
            output_length=len(result.output),
            cost_usd=result.cost_usd,
        )
        return result

    @staticmethod
    async def _emit(request: AgentRequest, chunk: str, final: bool = False) -> None:
        if request.on_stream is None:
            return
        outcome = request.on_stream(chunk, final)
        if inspect.isawaitable(outcome):
            await outcome


def _assistant_text(event: dict[str, Any]) -> str:
    """Text blocks of an ``assistant`` stream event, concatenated."""
    if event.get("type") != "assistant":
        return ""
    message = event.get("message") or {}
    blocks = message.get("content") or []
    return "".join(
        block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text"
    )
