# stream.py
# Live progress protocol: the emitter turns committed steps into
# Server-Sent-Event frames, the consumer turns bytes back into events.
#
# Frame format, one JSON event per frame:
#   data: {"type": "thought", "iteration": 1, ...}\n\n
#   ...
#   data: {"type": "final", "result": {...}}\n\n      (or "error")
#   data: [DONE]\n\n
#
# Frames are produced whole and in loop order. A cancelled stream stops
# after the last whole frame; the sentinel is never fabricated.

import codecs
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from typing import Any

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from careloop.errors import CareloopError, TransportError
from careloop.harness import ReActLoop, Run
from careloop.models import (
    ActionStep,
    ErrorEvent,
    FinalEvent,
    ObservationStep,
    RunRequest,
    RunResult,
    Step,
    StreamEvent,
    ThoughtStep,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

_event_adapter: TypeAdapter = TypeAdapter(StreamEvent)


def encode_event(event: BaseModel) -> bytes:
    return f"{DATA_PREFIX} {event.model_dump_json(by_alias=True)}\n\n".encode("utf-8")


def encode_done() -> bytes:
    return f"{DATA_PREFIX} {DONE_SENTINEL}\n\n".encode("utf-8")


def decode_event(data: str) -> StreamEvent:
    """Parse one frame payload. Raises pydantic.ValidationError on bad input."""
    return _event_adapter.validate_json(data)


# ---------------------------------------------------------------------------
# Emitter (server side)
# ---------------------------------------------------------------------------


class ProgressEmitter:
    """Mirrors a run onto an ordered stream of encoded frames."""

    def __init__(self, loop: ReActLoop) -> None:
        self._loop = loop

    async def stream(self, request: RunRequest) -> AsyncIterator[bytes]:
        """
        Run `request` and yield one frame per step, then final/error, then [DONE].

        Provider and other failures are reported in-band as an error frame.
        Cancellation propagates without further frames.
        """
        run = Run(request)
        try:
            async with aclosing(self._loop.iterate(run)) as steps:
                async for step in steps:
                    yield encode_event(step)
        except CareloopError as exc:
            yield encode_event(
                ErrorEvent(error=str(exc), retryable=exc.retryable, partial_result=exc.partial_result)
            )
        except Exception as exc:
            logger.exception("Run %s failed while streaming", run.run_id)
            yield encode_event(
                ErrorEvent(error=str(exc) or type(exc).__name__, partial_result=self._loop.report(run))
            )
        else:
            yield encode_event(FinalEvent(result=self._loop.report(run)))
        yield encode_done()

    async def pump(self, request: RunRequest, send: Callable[[bytes], Awaitable[Any]]) -> None:
        """
        Write every frame through `send`, e.g. a response body writer.

        A failing `send` aborts the run and surfaces as TransportError; frames
        already sent stay valid.
        """
        async with aclosing(self.stream(request)) as frames:
            async for frame in frames:
                try:
                    await send(frame)
                except CareloopError:
                    raise
                except Exception as exc:
                    raise TransportError(f"Failed to deliver progress frame: {exc}") from exc


# ---------------------------------------------------------------------------
# Consumer (client side)
# ---------------------------------------------------------------------------


class StreamConsumer:
    """
    Reassembles frames from arbitrary byte chunks and dispatches callbacks.

    Partial lines and split UTF-8 sequences are buffered until complete, so
    no event is lost or duplicated across chunk boundaries. Frames that do
    not parse are logged and skipped.
    """

    def __init__(
        self,
        on_thought: Callable[[ThoughtStep], Any] | None = None,
        on_action: Callable[[ActionStep], Any] | None = None,
        on_observation: Callable[[ObservationStep], Any] | None = None,
        on_complete: Callable[[RunResult], Any] | None = None,
        on_error: Callable[[ErrorEvent], Any] | None = None,
    ) -> None:
        self._on_thought = on_thought
        self._on_action = on_action
        self._on_observation = on_observation
        self._on_complete = on_complete
        self._on_error = on_error
        self.reset()

    def reset(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._last_iteration = 0
        self.steps: list[Step] = []
        self.result: RunResult | None = None
        self.error: ErrorEvent | None = None
        self.done = False

    @property
    def finished(self) -> bool:
        return self.done or self.result is not None or self.error is not None

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Accept a chunk of bytes; return the events it completed."""
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._handle_lines(lines)

    def finish(self) -> list[StreamEvent]:
        """Flush a trailing line left without a newline at end of stream."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._handle_lines([tail])

    async def consume(self, chunks: AsyncIterable[bytes]) -> RunResult | None:
        async for chunk in chunks:
            self.feed(chunk)
        self.finish()
        return self.result

    async def stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: dict[str, Any],
    ) -> RunResult | None:
        """POST `body` to `url` with stream=true and consume the response."""
        stream_url = httpx.URL(url).copy_merge_params({"stream": "true"})
        try:
            async with client.stream(
                "POST", stream_url, json=body, headers={"Accept": SSE_HEADERS["Content-Type"]}
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"HTTP {response.status_code}: {detail[:300]}",
                        status_code=response.status_code,
                    )
                await self.consume(response.aiter_bytes())
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream failed: {exc}") from exc

        if not self.finished:
            raise TransportError("Stream ended before a terminal event.")
        return self.result

    # ------------------------------------------------------------------

    def _handle_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):].strip()
            if not data:
                continue
            if data == DONE_SENTINEL:
                self.done = True
                continue
            try:
                event = decode_event(data)
            except ValidationError as exc:
                logger.warning("Skipping unparsable stream event %r: %s", data[:200], exc)
                continue
            self._dispatch(event)
            events.append(event)
        return events

    def _dispatch(self, event: StreamEvent) -> None:
        if isinstance(event, (ThoughtStep, ActionStep, ObservationStep)):
            if event.iteration < self._last_iteration:
                logger.warning(
                    "Out-of-order step: iteration %d after %d", event.iteration, self._last_iteration
                )
            self._last_iteration = max(self._last_iteration, event.iteration)
            self.steps.append(event)

        if isinstance(event, ThoughtStep):
            if self._on_thought:
                self._on_thought(event)
        elif isinstance(event, ActionStep):
            if self._on_action:
                self._on_action(event)
        elif isinstance(event, ObservationStep):
            if self._on_observation:
                self._on_observation(event)
        elif isinstance(event, FinalEvent):
            self.result = event.result
            if self._on_complete:
                self._on_complete(event.result)
        elif isinstance(event, ErrorEvent):
            self.error = event
            if self._on_error:
                self._on_error(event)
