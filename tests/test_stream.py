import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from careloop.errors import ProviderError, TransportError
from careloop.harness import ReActLoop
from careloop.models import ActionStep, ErrorEvent, FinalEvent, ObservationStep, RunRequest, RunStatus, ThoughtStep
from careloop.stream import (
    SSE_HEADERS,
    ProgressEmitter,
    StreamConsumer,
    decode_event,
    encode_done,
    encode_event,
)

from conftest import ScriptedProvider, final, tool_call


async def collect(emitter: ProgressEmitter, request: RunRequest) -> list[bytes]:
    return [frame async for frame in emitter.stream(request)]


def payloads(frames: list[bytes]) -> list[str]:
    out = []
    for frame in frames:
        text = frame.decode("utf-8")
        assert text.startswith("data: ")
        assert text.endswith("\n\n")
        out.append(text[len("data: "):-2])
    return out


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_emitter_frames_follow_loop_order(echo_registry):
    provider = ScriptedProvider([tool_call("echo", {"message": "hi"}), final("bye")])
    frames = await collect(ProgressEmitter(ReActLoop(provider)), RunRequest(prompt="go", tools=echo_registry))

    data = payloads(frames)
    assert data[-1] == "[DONE]"
    events = [json.loads(d) for d in data[:-1]]
    assert [e["type"] for e in events] == ["thought", "action", "observation", "thought", "final"]
    assert [e["iteration"] for e in events[:-1]] == [1, 1, 1, 2]
    result = events[-1]["result"]
    assert result["status"] == "done"
    assert result["answer"] == "bye"
    assert result["toolsUsed"] == ["echo"]


@pytest.mark.asyncio
async def test_emitter_reports_exhaustion_as_final(echo_registry):
    provider = ScriptedProvider(["not json"])
    frames = await collect(
        ProgressEmitter(ReActLoop(provider)), RunRequest(prompt="go", tools=echo_registry, max_iterations=2)
    )
    event = decode_event(payloads(frames)[-2])
    assert isinstance(event, FinalEvent)
    assert event.result.status is RunStatus.EXHAUSTED
    assert event.result.answer is None


@pytest.mark.asyncio
async def test_emitter_reports_provider_failure_in_band(echo_registry):
    provider = ScriptedProvider(
        [tool_call("echo", {"message": "hi"}), ProviderError("Rate limit exceeded", retryable=True)]
    )
    frames = await collect(ProgressEmitter(ReActLoop(provider)), RunRequest(prompt="go", tools=echo_registry))

    data = payloads(frames)
    assert data[-1] == "[DONE]"
    error = decode_event(data[-2])
    assert isinstance(error, ErrorEvent)
    assert error.error == "Rate limit exceeded"
    assert error.retryable is True
    assert error.partial_result.status is RunStatus.FAILED
    assert len(error.partial_result.steps) == 3


@pytest.mark.asyncio
async def test_closing_stream_early_cancels_run(echo_registry):
    provider = ScriptedProvider([tool_call("echo", {"message": "hi"})])
    emitter = ProgressEmitter(ReActLoop(provider))

    stream = emitter.stream(RunRequest(prompt="go", tools=echo_registry, max_iterations=5))
    first = await stream.__anext__()
    await stream.aclose()

    assert decode_event(payloads([first])[0]).type == "thought"
    assert len(provider.prompts) == 1


@pytest.mark.asyncio
async def test_pump_delivers_every_frame(echo_registry):
    send = AsyncMock()
    await ProgressEmitter(ReActLoop(ScriptedProvider([final("ok")]))).pump(
        RunRequest(prompt="go", tools=echo_registry), send
    )
    sent = [call.args[0] for call in send.await_args_list]
    assert sent[-1] == encode_done()
    assert len(sent) == 3


@pytest.mark.asyncio
async def test_pump_wraps_send_failure(echo_registry):
    send = AsyncMock(side_effect=ConnectionResetError("client went away"))
    with pytest.raises(TransportError, match="client went away"):
        await ProgressEmitter(ReActLoop(ScriptedProvider([final("ok")]))).pump(
            RunRequest(prompt="go", tools=echo_registry), send
        )


def test_sse_headers():
    assert SSE_HEADERS["Content-Type"] == "text/event-stream"
    assert SSE_HEADERS["Cache-Control"] == "no-cache"


# ---------------------------------------------------------------------------
# Consumer
# ---------------------------------------------------------------------------


def sample_frames() -> bytes:
    return b"".join(
        [
            encode_event(ThoughtStep(iteration=1, thought="Checking the médication list")),
            encode_event(ActionStep(iteration=1, tool="echo", args={"message": "hi"})),
            encode_event(ObservationStep(iteration=1, observation="ok ✓")),
            encode_event(ThoughtStep(iteration=2, thought="Done")),
            encode_event(
                FinalEvent(
                    result={
                        "run_id": "abc",
                        "status": "done",
                        "answer": "All set",
                        "iterations": 2,
                    }
                )
            ),
            encode_done(),
        ]
    )


def test_consumer_dispatches_callbacks():
    on_thought, on_action, on_observation, on_complete = MagicMock(), MagicMock(), MagicMock(), MagicMock()
    consumer = StreamConsumer(
        on_thought=on_thought, on_action=on_action, on_observation=on_observation, on_complete=on_complete
    )
    events = consumer.feed(sample_frames())

    assert len(events) == 5
    assert on_thought.call_count == 2
    on_action.assert_called_once()
    assert on_observation.call_args.args[0].observation == "ok ✓"
    assert on_complete.call_args.args[0].answer == "All set"
    assert consumer.done is True
    assert consumer.finished is True
    assert len(consumer.steps) == 4


def test_consumer_reassembles_byte_by_byte():
    data = sample_frames()
    whole = StreamConsumer()
    whole.feed(data)

    split = StreamConsumer()
    for i in range(len(data)):
        split.feed(data[i : i + 1])
    split.finish()

    assert split.steps == whole.steps
    assert split.steps[0].thought == "Checking the médication list"
    assert split.result == whole.result
    assert split.done


def test_consumer_flushes_unterminated_tail():
    consumer = StreamConsumer()
    frame = encode_event(ThoughtStep(iteration=1, thought="tail")).rstrip(b"\n")
    assert consumer.feed(frame) == []
    events = consumer.finish()
    assert [e.thought for e in events] == ["tail"]


def test_consumer_skips_unparsable_frames():
    consumer = StreamConsumer()
    events = consumer.feed(
        b'data: {"type": "thought", "iteration": 1\n\n'
        b'data: {"type": "mystery"}\n\n'
        b": keep-alive comment\n\n"
        + encode_event(ThoughtStep(iteration=1, thought="survived"))
    )
    assert [e.thought for e in events] == ["survived"]


def test_consumer_records_error_event():
    on_error = MagicMock()
    consumer = StreamConsumer(on_error=on_error)
    consumer.feed(encode_event(ErrorEvent(error="Rate limit exceeded", retryable=True)) + encode_done())

    assert consumer.error.retryable is True
    assert consumer.result is None
    on_error.assert_called_once()


def test_consumer_warns_on_decreasing_iteration(caplog):
    consumer = StreamConsumer()
    consumer.feed(
        encode_event(ThoughtStep(iteration=2, thought="b")) + encode_event(ThoughtStep(iteration=1, thought="a"))
    )
    assert "Out-of-order step" in caplog.text
    assert [s.thought for s in consumer.steps] == ["b", "a"]


def test_consumer_reset_clears_state():
    consumer = StreamConsumer()
    consumer.feed(sample_frames())
    consumer.reset()
    assert consumer.steps == []
    assert consumer.result is None
    assert not consumer.finished


@pytest.mark.asyncio
async def test_consumer_consumes_async_chunks():
    data = sample_frames()

    async def chunks():
        for i in range(0, len(data), 7):
            yield data[i : i + 7]

    result = await StreamConsumer().consume(chunks())
    assert result.answer == "All set"


# ---------------------------------------------------------------------------
# HTTP round trip
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_consumer_streams_emitter_over_http(echo_registry):
    emitter = ProgressEmitter(ReActLoop(ScriptedProvider([tool_call("echo", {"message": "hi"}), final("bye")])))
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["stream"] = request.url.params.get("stream")
        seen["body"] = json.loads(request.content)
        body = RunRequest(prompt=seen["body"]["prompt"], tools=echo_registry)
        return httpx.Response(200, headers=SSE_HEADERS, content=emitter.stream(body))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        consumer = StreamConsumer()
        result = await consumer.stream(client, "http://coach.test/api/agent", {"prompt": "go"})

    assert seen["stream"] == "true"
    assert result.answer == "bye"
    assert [s.type for s in consumer.steps] == ["thought", "action", "observation", "thought"]


@pytest.mark.asyncio
async def test_consumer_raises_transport_error_on_http_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="overloaded"))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(TransportError) as excinfo:
            await StreamConsumer().stream(client, "http://coach.test/api/agent", {"prompt": "go"})

    assert excinfo.value.status_code == 503
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_consumer_raises_transport_error_on_connection_failure():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
        with pytest.raises(TransportError, match="connection refused"):
            await StreamConsumer().stream(client, "http://coach.test/api/agent", {"prompt": "go"})


@pytest.mark.asyncio
async def test_consumer_raises_when_stream_ends_early():
    partial = encode_event(ThoughtStep(iteration=1, thought="thinking"))
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=partial))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(TransportError, match="before a terminal event"):
            await StreamConsumer().stream(client, "http://coach.test/api/agent", {"prompt": "go"})
