# harness.py
# ReAct agent loop controller.
#
# The loop is the kernel. The model is a passive responder. This module owns
# all control flow: one model call, one parse and at most one capability
# dispatch per cycle, until a final answer or the iteration budget runs out.
#
# Control flow per cycle:
#   Thinking (model call) → classify → Acting (dispatch) → Observing → …
#   … → Done | Exhausted
#
# Parse and capability failures become observations. Only provider failures
# (and cancellation) escape, after the run is marked FAILED.

import asyncio
import itertools
import json
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, Field

from careloop import config
from careloop.errors import CareloopError, ProviderError, RunStateError, TransportError
from careloop.models import (
    ActionStep,
    ObservationStep,
    RunRequest,
    RunResult,
    RunStatus,
    Step,
    ThoughtStep,
    TokenUsage,
    utcnow,
)
from careloop.providers import TextGenerator
from careloop.recovery import extract_object, strip_wrapper
from careloop.tools import Capability
from careloop.tracing import Tracer

__all__ = [
    "ProviderError",
    "ReActLoop",
    "Run",
    "RunStateError",
    "TransportError",
    "build_system_prompt",
    "fallback_answer",
    "parse_turn",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

REACT_INSTRUCTIONS = """\
## ReAct Loop Instructions

You are a ReAct agent. For each user request, reason step-by-step and use \
tools to gather information before providing a final answer.

### Available Tools
{tools}

### Response Format

At each step, respond with ONLY a valid JSON object in one of these two formats.

If you need to use a tool:
{{
  "thought": "Your reasoning about what you know and what you need to find out next",
  "action": {{"tool": "tool_name", "args": {{"param1": "value1"}}}}
}}

If you have enough information to give a final answer:
{{
  "thought": "Your reasoning about why you now have enough information",
  "final_answer": "Your complete answer to the user's question"
}}

### Important Rules
1. ALWAYS start with a thought explaining your reasoning.
2. Call only ONE tool at a time. You will see its result before the next step.
3. Give a final_answer only once you no longer need any tool. A response \
that contains an action is treated as a tool call and its final_answer is ignored.
4. NEVER make up information. Only use what the tools return.
5. If a tool returns an error or nothing useful, reason about what to try next.\
"""

NEXT_STEP_PROMPT = "Now provide your next step as JSON:"

NO_ACTION_OBSERVATION = "No action specified. Please provide either an action or a final_answer."

MALFORMED_OBSERVATION = (
    "Error: your previous response could not be parsed ({reason}). Respond with ONLY valid JSON: "
    '{{"thought": "...", "action": {{"tool": "tool_name", "args": {{}}}}}} or '
    '{{"thought": "...", "final_answer": "..."}}'
)

TRUNCATION_MARKER = "\n…[truncated]"
_THOUGHT_PREVIEW_CHARS = 500


def build_system_prompt(base_prompt: str, capabilities: list[Capability]) -> str:
    tools = "\n\n".join(c.describe() for c in capabilities) or "(no tools available)"
    instructions = REACT_INSTRUCTIONS.format(tools=tools)
    if not base_prompt.strip():
        return instructions
    return f"{base_prompt.rstrip()}\n\n{instructions}"


# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------


class ParsedTurn(BaseModel):
    """One model response, classified. At most one of tool/final_answer/error is acted on."""

    thought: str
    tool: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    final_answer: str | None = None
    error: str | None = None


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def parse_turn(content: str) -> ParsedTurn:
    """
    Classify a raw model response as a tool call, a final answer, or malformed.

    A well-formed action always wins over a final_answer in the same object.
    """
    recovered = extract_object(content)
    if not recovered.ok:
        prose = strip_wrapper(content or "")
        return ParsedTurn(
            thought=_clip(prose, _THOUGHT_PREVIEW_CHARS) if prose else "Parse error",
            error=recovered.detail,
        )

    data: dict[str, Any] = recovered.value
    thought = data.get("thought")
    if not isinstance(thought, str) or not thought.strip():
        thought = "Analyzing..."

    action = data.get("action")
    if action is not None:
        if not isinstance(action, dict) or not isinstance(action.get("tool"), str) or not action["tool"].strip():
            return ParsedTurn(thought=thought, error='malformed action, expected {"tool": string, "args": object}')
        args = action.get("args")
        if args is None:
            args = {}
        if not isinstance(args, dict):
            return ParsedTurn(thought=thought, error="action args must be a JSON object")
        return ParsedTurn(thought=thought, tool=action["tool"].strip(), args=args)

    final = data.get("final_answer")
    if final is not None and final != "" and final != {} and final != []:
        answer = final if isinstance(final, str) else json.dumps(final, indent=2, ensure_ascii=False)
        return ParsedTurn(thought=thought, final_answer=answer)

    return ParsedTurn(thought=thought)


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class Run:
    """
    State of one loop invocation: transcript, iteration counter, outcome.

    The transcript is append-only and every step belongs to the cycle in
    progress. The outcome is set exactly once.
    """

    def __init__(self, request: RunRequest) -> None:
        self.request = request
        self.run_id = uuid.uuid4().hex
        self.registry = request.registry()
        self.max_iterations = request.max_iterations
        self.iteration = 0
        self.usage = TokenUsage()
        self.tools_used: list[str] = []
        self.status: RunStatus | None = None
        self.answer: str | None = None
        self.failure_reason: str | None = None
        self.started = False
        self.started_at = utcnow()
        self.ended_at = None
        self._transcript: list[Step] = []

    @property
    def transcript(self) -> tuple[Step, ...]:
        return tuple(self._transcript)

    @property
    def finished(self) -> bool:
        return self.status is not None

    def append(self, step: Step) -> Step:
        if self.finished:
            raise RunStateError(f"Run {self.run_id} is already {self.status.value}.")
        if step.iteration != self.iteration + 1:
            raise RunStateError(
                f"Step for iteration {step.iteration} does not belong to cycle {self.iteration + 1}."
            )
        self._transcript.append(step)
        return step

    def complete_cycle(self) -> None:
        self.iteration += 1

    def record_tool(self, name: str) -> None:
        if name not in self.tools_used:
            self.tools_used.append(name)

    def finish(self, status: RunStatus, answer: str | None = None, reason: str | None = None) -> None:
        if self.finished:
            raise RunStateError(f"Run {self.run_id} already finished as {self.status.value}.")
        self.status = status
        self.answer = answer
        self.failure_reason = reason
        self.ended_at = utcnow()

    def reasoning_trace(self) -> str:
        return "\n".join(
            f"[{step.iteration}] {step.thought}"
            for step in self._transcript
            if isinstance(step, ThoughtStep)
        )

    def result(self, model: str = "") -> RunResult:
        ended_at = self.ended_at or utcnow()
        metadata = {
            **self.request.metadata,
            "model": model,
            "start_time": self.started_at.isoformat(),
            "end_time": ended_at.isoformat(),
            "total_latency_ms": int((ended_at - self.started_at).total_seconds() * 1000),
            "estimated_cost_usd": self.usage.estimated_cost_usd(),
        }
        return RunResult(
            run_id=self.run_id,
            thread_id=self.request.thread_id,
            status=self.status or RunStatus.FAILED,
            answer=self.answer,
            failure_reason=self.failure_reason,
            steps=list(self._transcript),
            iterations=self.iteration,
            tools_used=list(self.tools_used),
            reasoning_trace=self.reasoning_trace(),
            usage=self.usage,
            metadata=metadata,
        )


def fallback_answer(result: RunResult) -> str:
    """Caller-side summary for an exhausted run. The loop never invents one."""
    observations = [s.observation for s in result.steps if isinstance(s, ObservationStep)]
    return (
        f"I've gathered information through {result.iterations} steps but reached the "
        f"iteration limit. Based on what I found: {' '.join(observations[-3:])}"
    )


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class ReActLoop:
    """
    Drives runs against one text-generation provider.

    Example:
        loop = ReActLoop(create_provider("openai-gpt-4o-mini"))
        result = await loop.run(RunRequest(prompt="...", tools=registry))
    """

    def __init__(
        self,
        provider: TextGenerator,
        tracer: Tracer | None = None,
        max_observation_chars: int = config.MAX_OBSERVATION_CHARS,
    ) -> None:
        self._provider = provider
        self._tracer = tracer or Tracer()
        self._max_observation_chars = max_observation_chars

    @property
    def model(self) -> str:
        return getattr(self._provider, "model", "")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, request: RunRequest) -> RunResult:
        run = Run(request)
        async for _ in self.iterate(run):
            pass
        return self.report(run)

    def report(self, run: Run) -> RunResult:
        return run.result(model=self.model)

    async def iterate(self, run: Run) -> AsyncIterator[Step]:
        """
        Drive `run` to a terminal state, yielding each step as it is committed.

        Raises ProviderError (with partial_result set) if the model call fails.
        """
        if run.started:
            raise RunStateError(f"Run {run.run_id} has already been started.")
        run.started = True

        capabilities = run.registry.list()
        system_prompt = build_system_prompt(run.request.system_prompt, capabilities)
        trace = self._tracer.trace(
            "react-agent-loop",
            {
                **run.request.metadata,
                "run_id": run.run_id,
                "thread_id": run.request.thread_id,
                "model": self.model,
                "max_iterations": run.max_iterations,
                "tool_count": len(capabilities),
            },
        )
        span = None

        try:
            while run.iteration < run.max_iterations:
                iteration = run.iteration + 1
                span = trace.span(f"iteration-{iteration}", {"iteration": iteration})

                response = await self._provider.generate(
                    self._prompt(run),
                    system_prompt=system_prompt,
                    metadata={"iteration": iteration, "span_name": f"react-step-{iteration}"},
                )
                if response.token_usage is not None:
                    run.usage = run.usage + response.token_usage
                usage = response.token_usage or TokenUsage()
                logger.info(
                    "[ReAct] Iteration %d - Tokens: prompt=%d, completion=%d, latency=%dms",
                    iteration,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    response.latency_ms,
                )

                turn = parse_turn(response.content)
                yield run.append(ThoughtStep(iteration=iteration, thought=turn.thought))

                if turn.tool is None and turn.final_answer is not None:
                    run.complete_cycle()
                    run.finish(RunStatus.DONE, answer=turn.final_answer)
                    span.end(output={"thought": turn.thought, "final_answer": turn.final_answer}, is_final=True)
                    break

                if turn.tool is not None:
                    yield run.append(ActionStep(iteration=iteration, tool=turn.tool, args=turn.args))
                    observation = await self._dispatch(run, turn.tool, turn.args, span)
                elif turn.error is not None:
                    logger.warning("[ReAct] Parse error at iteration %d: %s", iteration, turn.error)
                    observation = MALFORMED_OBSERVATION.format(reason=_clip(turn.error, 300))
                else:
                    observation = NO_ACTION_OBSERVATION

                yield run.append(ObservationStep(iteration=iteration, observation=observation))
                run.complete_cycle()
                span.end(output={"thought": turn.thought, "tool": turn.tool, "observation": observation})
            else:
                run.finish(RunStatus.EXHAUSTED)
                logger.warning(
                    "[ReAct] Max iterations (%d) reached without a final answer.", run.max_iterations
                )
        except CareloopError as exc:
            if not run.finished:
                run.finish(RunStatus.FAILED, reason=str(exc))
            exc.partial_result = self.report(run)
            logger.error("[ReAct] Run %s failed after %d iterations: %s", run.run_id, run.iteration, exc)
            raise
        except (asyncio.CancelledError, GeneratorExit):
            if not run.finished:
                run.finish(RunStatus.FAILED, reason="cancelled")
            logger.info("[ReAct] Run %s cancelled after %d iterations.", run.run_id, run.iteration)
            raise
        except Exception as exc:
            if not run.finished:
                run.finish(RunStatus.FAILED, reason=str(exc) or type(exc).__name__)
            logger.exception("[ReAct] Run %s aborted by an unexpected error.", run.run_id)
            raise
        finally:
            if span is not None:
                span.end()
            trace.end(
                status=run.status.value if run.status else None,
                iterations=run.iteration,
                tools_used=list(run.tools_used),
                total_tokens=run.usage.total_tokens,
                prompt_tokens=run.usage.prompt_tokens,
                completion_tokens=run.usage.completion_tokens,
                estimated_cost_usd=run.usage.estimated_cost_usd(),
                error=run.failure_reason if run.status is RunStatus.FAILED else None,
            )

        logger.info(
            "[ReAct] %s after %d iterations - Total tokens: %d",
            run.status.value,
            run.iteration,
            run.usage.total_tokens,
        )

    # ------------------------------------------------------------------
    # Cycle helpers
    # ------------------------------------------------------------------

    def _prompt(self, run: Run) -> str:
        """Render the conversation so far for the next model call."""
        parts = [f"User: {run.request.prompt}\n"]
        for _, group in itertools.groupby(run.transcript, key=lambda s: s.iteration):
            thought, action, observation = "", None, ""
            for step in group:
                if isinstance(step, ThoughtStep):
                    thought = step.thought
                elif isinstance(step, ActionStep):
                    action = {"tool": step.tool, "args": step.args}
                else:
                    observation = step.observation
            assistant = json.dumps({"thought": thought, "action": action}, indent=2, ensure_ascii=False)
            parts.append(f"Assistant: {assistant}\nObservation: {observation}\n")
        parts.append(NEXT_STEP_PROMPT)
        return "\n".join(parts)

    async def _dispatch(self, run: Run, tool: str, args: dict[str, Any], span) -> str:
        capability = run.registry.get(tool)
        if capability is None:
            logger.warning("[ReAct] Model requested unknown tool %r", tool)
            available = ", ".join(run.registry.names()) or "none"
            return f'Error: Unknown tool "{tool}". Available tools: {available}'

        problems = capability.validate_args(args)
        if problems:
            return f"Error: invalid arguments for {tool}: {'; '.join(problems)}"

        tool_span = span.span(f"tool-{tool}", {"tool": tool, "args": args})
        run.record_tool(tool)
        try:
            result = await capability.invoke(args)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("[ReAct] Capability %s failed: %s", tool, message)
            tool_span.end(success=False, error=message)
            return self._bound(f"Error executing {tool}: {message}")

        tool_span.end(success=True)
        return self._format_observation(result)

    def _format_observation(self, result: Any) -> str:
        if isinstance(result, str):
            return self._bound(result)
        try:
            text = json.dumps(result, indent=2, default=str, ensure_ascii=False)
        except (TypeError, ValueError):
            text = repr(result)
        return self._bound(text)

    def _bound(self, text: str) -> str:
        return _clip(text, self._max_observation_chars)
