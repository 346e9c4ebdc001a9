# models.py
# Data contracts for the agent loop and its progress stream.
# No business logic lives here: pure schema and validation.
#
# Step models double as wire events: a ThoughtStep serialises to exactly the
# {"type": "thought", ...} frame the stream carries.

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from careloop import config
from careloop.tools import Capability, CapabilityRegistry


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Transcript steps
# ---------------------------------------------------------------------------


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    iteration: int = Field(..., ge=1, description="1-based loop iteration.")
    timestamp: datetime = Field(default_factory=utcnow)


class ThoughtStep(_StepBase):
    type: Literal["thought"] = "thought"
    thought: str


class ActionStep(_StepBase):
    type: Literal["action"] = "action"
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)


class ObservationStep(_StepBase):
    type: Literal["observation"] = "observation"
    observation: str


Step = Annotated[Union[ThoughtStep, ActionStep, ObservationStep], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Provider responses
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenUsage(_WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def estimated_cost_usd(self) -> float | None:
        if not self.total_tokens:
            return None
        return (
            self.prompt_tokens * config.PROMPT_COST_PER_1K
            + self.completion_tokens * config.COMPLETION_COST_PER_1K
        ) / 1000


class LLMResponse(BaseModel):
    content: str
    model: str
    provider: str
    latency_ms: int = 0
    token_usage: TokenUsage | None = None


# ---------------------------------------------------------------------------
# Run contracts
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    DONE = "done"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class RunRequest(BaseModel):
    """Everything the loop needs for one run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    prompt: str
    system_prompt: str = ""
    tools: list[Capability] | CapabilityRegistry = Field(default_factory=list)
    max_iterations: int = Field(default=config.MAX_ITERATIONS, ge=1)
    thread_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def registry(self) -> CapabilityRegistry:
        if isinstance(self.tools, CapabilityRegistry):
            return self.tools
        return CapabilityRegistry(self.tools)


class RunResult(_WireModel):
    """Terminal report of a run. `answer` is only set when status is DONE."""

    run_id: str
    thread_id: str | None = None
    status: RunStatus
    answer: str | None = None
    failure_reason: str | None = None
    steps: list[Step] = Field(default_factory=list)
    iterations: int = 0
    tools_used: list[str] = Field(default_factory=list)
    reasoning_trace: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Terminal wire events (step events reuse the Step models)
# ---------------------------------------------------------------------------


class FinalEvent(_WireModel):
    type: Literal["final"] = "final"
    result: RunResult


class ErrorEvent(_WireModel):
    type: Literal["error"] = "error"
    error: str
    retryable: bool = False
    partial_result: RunResult | None = None


StreamEvent = Annotated[
    Union[ThoughtStep, ActionStep, ObservationStep, FinalEvent, ErrorEvent],
    Field(discriminator="type"),
]
