from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import httpx


def sse(*events: str) -> bytes:
    return "".join(f"{event}\n\n" for event in events).encode("utf-8")


def delta_event(content: str | None = None, finish_reason: str | None = None) -> str:
    delta = "{}" if content is None else '{"content":"%s"}' % content
    finish = "null" if finish_reason is None else '"%s"' % finish_reason
    return 'data: {"choices":[{"index":0,"delta":%s,"finish_reason":%s}]}' % (
        delta,
        finish,
    )


class _ScriptedBody(httpx.AsyncByteStream):
    def __init__(self, reads: list[bytes | BaseException], hang: bool) -> None:
        self._reads = reads
        self._hang = hang

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for item in self._reads:
            if isinstance(item, BaseException):
                raise item
            yield item
        if self._hang:
            await asyncio.Event().wait()


class FakeByteStream:
    """Stands in for a streamed ``httpx.Response``.

    ``reads`` are the raw body reads, decoded into lines by httpx itself; an
    exception instance is raised at its position. With ``hang=True`` the
    stream stalls after the last read.
    """

    def __init__(
        self,
        reads: list[bytes | BaseException],
        *,
        status_code: int = 200,
        hang: bool = False,
    ) -> None:
        self.reads = reads
        self.status_code = status_code
        self.hang = hang
        self.closed = False
        self.close_calls = 0

    def aiter_lines(self) -> AsyncIterator[str]:
        response = httpx.Response(
            self.status_code, stream=_ScriptedBody(self.reads, self.hang)
        )
        return response.aiter_lines()

    async def aread(self) -> bytes:
        return b"".join(item for item in self.reads if isinstance(item, bytes))

    async def aclose(self) -> None:
        self.closed = True
        self.close_calls += 1


class FakeUpstream:
    def __init__(
        self,
        responses: list[FakeByteStream | BaseException] | None = None,
        *,
        verify_outcomes: dict[str, Any] | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.verify_outcomes = verify_outcomes or {}
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def open_stream(
        self,
        body: Any,
        credential: Any,
        route: Any,
        *,
        request_id: str | None = None,
    ) -> FakeByteStream:
        self.calls.append(
            {
                "body": body,
                "credential": credential.id,
                "route": route.id,
                "request_id": request_id,
            }
        )
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def verify(self, credential: Any, route: Any) -> Any:
        from notion_relay.pools import Outcome

        return self.verify_outcomes.get(credential.id, Outcome.SUCCESS)

    async def aclose(self) -> None:
        self.closed = True
