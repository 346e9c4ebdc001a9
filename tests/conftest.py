import json

import pytest
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from careloop.models import TokenUsage
from careloop.providers import ModelConfig, TextGenerator
from careloop.tools import CapabilityRegistry
from careloop.tracing import Tracer


class ScriptedProvider(TextGenerator):
    """Replays canned model responses in order; repeats the last one when exhausted."""

    def __init__(self, responses, usage: TokenUsage | None = None) -> None:
        super().__init__(ModelConfig(provider="openai", model_id="scripted", api_key_env="UNUSED"))
        self._responses = list(responses)
        self._usage = usage
        self.prompts: list[str] = []
        self.system_prompts: list[str | None] = []

    async def _complete(self, prompt, system_prompt):
        self.prompts.append(prompt)
        self.system_prompts.append(system_prompt)
        index = min(len(self.prompts), len(self._responses)) - 1
        response = self._responses[index]
        if isinstance(response, Exception):
            raise response
        return response, self._usage


def tool_call(tool: str, args: dict | None = None, thought: str = "Need data.") -> str:
    return json.dumps({"thought": thought, "action": {"tool": tool, "args": args or {}}})


def final(answer: str, thought: str = "Done.") -> str:
    return json.dumps({"thought": thought, "final_answer": answer})


@pytest.fixture
def echo_registry() -> CapabilityRegistry:
    registry = CapabilityRegistry()

    async def echo(args):
        return {"echo": args["message"]}

    registry.register(
        "echo",
        "Echo a message back.",
        {"properties": {"message": {"type": "string"}}, "required": ["message"]},
        echo,
    )
    return registry


class ExplodingProcessor(SpanProcessor):
    """A span processor whose backend is down."""

    def on_start(self, span, parent_context=None):
        raise ConnectionError("collector offline")

    def on_end(self, span):
        raise ConnectionError("collector offline")


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def tracer(span_exporter) -> Tracer:
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return Tracer(provider)


@pytest.fixture
def broken_tracer() -> Tracer:
    provider = TracerProvider()
    provider.add_span_processor(ExplodingProcessor())
    return Tracer(provider)
