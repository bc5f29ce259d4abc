from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedOK


class FakeWebSocket:
    """In-memory stand-in for a websockets client protocol."""

    def __init__(self, *, answer_pings: bool = True) -> None:
        self.answer_pings = answer_pings
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False

    def push(self, item: Any) -> None:
        if isinstance(item, dict):
            item = json.dumps(item)
        self.incoming.put_nowait(item)

    def commands(self, op: str) -> list[dict[str, Any]]:
        return [command for command in self.sent if command.get("op") == op]

    async def send(self, text: str) -> None:
        command = json.loads(text)
        self.sent.append(command)
        if command.get("op") == "ping" and self.answer_pings:
            self.push({"op": "pong", "req_id": command["req_id"], "success": True})

    async def recv(self) -> Any:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.incoming.put_nowait(ConnectionClosedOK(None, None))


class _FakeSession:
    def __init__(self, outcome: FakeWebSocket | BaseException) -> None:
        self._outcome = outcome

    async def __aenter__(self) -> FakeWebSocket:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc_info: object) -> bool:
        return False


class FakeConnector:
    """Scripted replacement for ``websockets.connect``; refuses once the script runs out."""

    def __init__(self, outcomes: list[FakeWebSocket | BaseException]) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, url: str, **kwargs: Any) -> _FakeSession:
        self.calls.append({"url": url, **kwargs})
        outcome = self._outcomes.pop(0) if self._outcomes else OSError("connection refused")
        return _FakeSession(outcome)


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def fake_socket() -> Callable[..., FakeWebSocket]:
    return FakeWebSocket


@pytest.fixture
def fake_connector() -> Callable[[list[FakeWebSocket | BaseException]], FakeConnector]:
    return FakeConnector


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return wait_for_condition
