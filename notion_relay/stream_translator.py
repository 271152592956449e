from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Protocol

import httpx
from pydantic import ValidationError

from notion_relay.errors import UpstreamParseError, UpstreamTransportFailure
from notion_relay.models import AggregatedCompletion, ChatChunk, UpstreamEvent
from notion_relay.pools.base import Outcome

logger = logging.getLogger("uvicorn.error")

DONE_SENTINEL = "[DONE]"
DEFAULT_FINISH_REASON = "stop"

_TRANSPORT_ERRORS = (httpx.RequestError, httpx.StreamError, OSError)


class LineStream(Protocol):
    def aiter_lines(self) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


class TranslatorState(str, Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_STATES = {
    TranslatorState.COMPLETED,
    TranslatorState.FAILED,
    TranslatorState.CANCELLED,
}


class CancelledByClient(Exception):
    """The translator was cancelled before it produced a complete result."""


def sse_data_payload(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    return payload or None


def decode_event(payload: str) -> UpstreamEvent:
    try:
        return UpstreamEvent.model_validate_json(payload)
    except ValidationError as exc:
        raise UpstreamParseError(
            f"{exc.error_count()} validation error(s): {exc.errors()[0]['msg']}"
        ) from exc


class StreamTranslator:
    """Turns one upstream SSE response into OpenAI chat chunks.

    The translator is bound to a single credential and egress route for its
    whole life. It is consumed either as an async iterator of ``ChatChunk``
    (streaming) or through ``aggregate()`` (non-streaming), never both.
    The terminal outcome is reported once through ``on_outcome``:
    ``SUCCESS`` on end of stream, ``TRANSIENT_FAILURE`` on transport failure
    or timeout, nothing on cancellation.
    """

    def __init__(
        self,
        upstream: LineStream,
        *,
        model: str,
        completion_id: str,
        credential_id: str,
        route_id: str,
        created: int | None = None,
        on_outcome: Callable[[Outcome], None] | None = None,
        idle_timeout_seconds: float | None = None,
        max_duration_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._upstream = upstream
        self._model = model
        self._completion_id = completion_id
        self._created = created if created is not None else int(time.time())
        self._credential_id = credential_id
        self._route_id = route_id
        self._on_outcome = on_outcome
        self._idle_timeout = idle_timeout_seconds if idle_timeout_seconds else None
        self._max_duration = max_duration_seconds if max_duration_seconds else None
        self._clock = clock

        self._state = TranslatorState.IDLE
        self._iterator: AsyncIterator[str] | None = None
        self._ready: deque[ChatChunk] = deque()
        self._end_of_stream = False
        self._deadline: float | None = None
        self._released = False
        self._finish_reason: str | None = None
        self._chunk_count = 0
        self._skipped_events = 0

    @property
    def state(self) -> TranslatorState:
        return self._state

    @property
    def completion_id(self) -> str:
        return self._completion_id

    @property
    def created(self) -> int:
        return self._created

    @property
    def model(self) -> str:
        return self._model

    @property
    def credential_id(self) -> str:
        return self._credential_id

    @property
    def route_id(self) -> str:
        return self._route_id

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    @property
    def skipped_events(self) -> int:
        return self._skipped_events

    def __aiter__(self) -> StreamTranslator:
        return self

    async def __anext__(self) -> ChatChunk:
        if self._state == TranslatorState.IDLE:
            self._start()
        while True:
            if self._state == TranslatorState.CANCELLED:
                raise StopAsyncIteration
            if self._ready:
                self._chunk_count += 1
                return self._ready.popleft()
            if self._state in _TERMINAL_STATES:
                raise StopAsyncIteration
            if self._end_of_stream:
                await self._complete()
                raise StopAsyncIteration
            await self._pump()

    async def aggregate(self) -> AggregatedCompletion:
        parts: list[str] = []
        async for chunk in self:
            if chunk.delta_content:
                parts.append(chunk.delta_content)
        if self._state != TranslatorState.COMPLETED:
            raise CancelledByClient(
                f"Stream {self._completion_id} ended in state {self._state.value}."
            )
        return AggregatedCompletion(
            id=self._completion_id,
            created=self._created,
            model=self._model,
            content="".join(parts),
            finish_reason=self._finish_reason or DEFAULT_FINISH_REASON,
        )

    async def cancel(self) -> None:
        if self._state in _TERMINAL_STATES:
            return
        previous = self._state
        self._state = TranslatorState.CANCELLED
        self._ready.clear()
        logger.info(
            "stream_cancelled completion_id=%s from=%s chunks=%d credential=%s route=%s",
            self._completion_id,
            previous.value,
            self._chunk_count,
            self._credential_id,
            self._route_id,
        )
        await self._release()

    def _start(self) -> None:
        self._state = TranslatorState.RECEIVING
        self._iterator = self._upstream.aiter_lines()
        if self._max_duration is not None:
            self._deadline = self._clock() + self._max_duration
        logger.debug(
            "stream_receiving completion_id=%s model=%s credential=%s route=%s",
            self._completion_id,
            self._model,
            self._credential_id,
            self._route_id,
        )

    async def _pump(self) -> None:
        assert self._iterator is not None
        try:
            timeout = self._next_read_timeout()
            if timeout is None:
                line = await anext(self._iterator)
            else:
                line = await asyncio.wait_for(anext(self._iterator), timeout=timeout)
        except StopAsyncIteration:
            self._end_of_stream = True
            return
        except asyncio.CancelledError:
            await self.cancel()
            raise
        except TimeoutError as exc:
            if self._state == TranslatorState.CANCELLED:
                return
            await self._fail(self._timeout_reason(), exc)
        except _TRANSPORT_ERRORS as exc:
            if self._state == TranslatorState.CANCELLED:
                return
            await self._fail(f"{exc.__class__.__name__}: {exc}", exc)
        except Exception:
            if self._state == TranslatorState.CANCELLED:
                return
            raise
        if self._state == TranslatorState.CANCELLED:
            return
        self._consume_line(line)

    def _next_read_timeout(self) -> float | None:
        if self._deadline is None:
            return self._idle_timeout
        remaining = max(0.0, self._deadline - self._clock())
        if self._idle_timeout is None:
            return remaining
        return min(self._idle_timeout, remaining)

    def _timeout_reason(self) -> str:
        if self._deadline is not None and self._clock() >= self._deadline:
            return f"stream exceeded max duration of {self._max_duration}s"
        return f"no upstream data for {self._idle_timeout}s"

    def _consume_line(self, line: str) -> None:
        payload = sse_data_payload(line)
        if payload is None:
            return
        if payload == DONE_SENTINEL:
            self._end_of_stream = True
            return
        try:
            event = decode_event(payload)
        except UpstreamParseError as exc:
            self._skipped_events += 1
            logger.warning(
                "upstream_event_skipped completion_id=%s error=%s payload=%s",
                self._completion_id,
                exc,
                payload[:200],
            )
            return
        chunk = self._chunk_from_event(event)
        if chunk is not None:
            self._ready.append(chunk)

    def _chunk_from_event(self, event: UpstreamEvent) -> ChatChunk | None:
        if not event.choices:
            return None
        choice = event.choices[0]
        content = choice.delta.content if choice.delta is not None else None
        if content is None and choice.finish_reason is None:
            return None
        if choice.finish_reason is not None:
            self._finish_reason = choice.finish_reason
        return ChatChunk(
            id=self._completion_id,
            created=self._created,
            model=self._model,
            index=choice.index,
            delta_content=content,
            finish_reason=choice.finish_reason,
        )

    async def _complete(self) -> None:
        self._state = TranslatorState.COMPLETED
        logger.info(
            "stream_completed completion_id=%s chunks=%d skipped_events=%d finish_reason=%s",
            self._completion_id,
            self._chunk_count,
            self._skipped_events,
            self._finish_reason,
        )
        self._report(Outcome.SUCCESS)
        await self._release()

    async def _fail(self, reason: str, exc: BaseException) -> None:
        self._state = TranslatorState.FAILED
        self._ready.clear()
        logger.warning(
            "stream_failed completion_id=%s chunks=%d credential=%s route=%s reason=%s",
            self._completion_id,
            self._chunk_count,
            self._credential_id,
            self._route_id,
            reason,
        )
        self._report(Outcome.TRANSIENT_FAILURE)
        await self._release()
        raise UpstreamTransportFailure(f"Upstream stream failed: {reason}") from exc

    def _report(self, outcome: Outcome) -> None:
        if self._on_outcome is None:
            return
        try:
            self._on_outcome(outcome)
        except Exception as exc:
            logger.warning(
                "stream_outcome_report_failed completion_id=%s outcome=%s error=%s",
                self._completion_id,
                outcome.value,
                exc,
            )

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await asyncio.shield(self._upstream.aclose())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug(
                "stream_release_failed completion_id=%s error=%s",
                self._completion_id,
                exc,
            )
