from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from bybit_market_sync.core.backoff import exponential_delay
from bybit_market_sync.core.enums import ConnectionState
from bybit_market_sync.core.events import EventChannel

NORMAL_CLOSURE = 1000

logger = logging.getLogger(__name__)


class HeartbeatTimeoutError(RuntimeError):
    """Raised when a ping goes unanswered."""


def reconnect_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    return exponential_delay(attempt, base_seconds, max_seconds)


def is_pong(message: dict[str, Any]) -> bool:
    return message.get("op") == "pong" or message.get("ret_msg") == "pong"


class StreamConnection:
    """Single Bybit public stream with heartbeat, topic replay and backoff reconnects.

    All work happens on the running event loop: ``start`` spawns a supervisor
    task that owns the socket, the heartbeat task and the backoff wait. Callers
    observe the connection through its event channels only.
    """

    def __init__(
        self,
        url: str,
        *,
        ping_interval_seconds: float = 20.0,
        pong_timeout_seconds: float = 10.0,
        reconnect_base_seconds: float = 1.0,
        reconnect_max_seconds: float = 30.0,
        max_reconnect_attempts: int = 10,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self._url = url
        self._ping_interval_seconds = ping_interval_seconds
        self._pong_timeout_seconds = pong_timeout_seconds
        self._reconnect_base_seconds = reconnect_base_seconds
        self._reconnect_max_seconds = reconnect_max_seconds
        self._max_reconnect_attempts = max_reconnect_attempts
        self._connect = connect or websockets.connect

        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: dict[str, None] = {}
        self._reconnect_attempts = 0
        self._ws: Any | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._pong_event = asyncio.Event()
        self._closing = False
        self._req_ids = itertools.count(1)

        self.messages: EventChannel[dict[str, Any]] = EventChannel("message")
        self.state_changes: EventChannel[ConnectionState] = EventChannel("connection_state_changed")
        self.transient_errors: EventChannel[str] = EventChannel("transient_error")
        self.permanent_failure: EventChannel[None] = EventChannel("permanent_failure")

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "connected": self.is_connected,
            "reconnect_attempts": self._reconnect_attempts,
            "subscriptions": self.subscriptions,
        }

    def start(self) -> None:
        if self._supervisor is not None and not self._supervisor.done():
            return
        if self._state is ConnectionState.PERMANENTLY_FAILED:
            logger.warning("Connection permanently failed; refusing to restart", extra={"url": self._url})
            return
        self._closing = False
        self._stop_event.clear()
        self._reconnect_attempts = 0
        self._supervisor = asyncio.create_task(self._run(), name="bybit-stream")

    async def wait_closed(self) -> None:
        if self._supervisor is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor

    async def close(self) -> None:
        self._closing = True
        self._stop_event.set()

        ws = self._ws
        if ws is not None:
            try:
                await ws.close(code=NORMAL_CLOSURE, reason="client close")
            except Exception:
                logger.debug("Error while closing websocket", exc_info=True)

        supervisor = self._supervisor
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        self._supervisor = None
        self._ws = None

        if self._state is not ConnectionState.PERMANENTLY_FAILED:
            self._set_state(ConnectionState.DISCONNECTED)

    async def subscribe(self, topic: str) -> None:
        if topic in self._subscriptions:
            return
        self._subscriptions[topic] = None
        if self.is_connected:
            await self._send_command("subscribe", [topic])

    async def unsubscribe(self, topic: str) -> None:
        if topic not in self._subscriptions:
            return
        del self._subscriptions[topic]
        if self.is_connected:
            await self._send_command("unsubscribe", [topic])

    async def _run(self) -> None:
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._run_session()
            except asyncio.CancelledError:
                raise
            except HeartbeatTimeoutError as exc:
                logger.warning("Heartbeat timed out; forcing reconnect", extra={"url": self._url})
                self.transient_errors.publish(str(exc))
            except (OSError, TimeoutError, WebSocketException) as exc:
                logger.warning(
                    "Stream connection failed",
                    extra={"url": self._url, "error": exc.__class__.__name__, "detail": str(exc)},
                )
                self.transient_errors.publish(f"{exc.__class__.__name__}: {exc}")
            except Exception as exc:
                logger.exception("Stream session crashed", extra={"url": self._url})
                self.transient_errors.publish(f"{exc.__class__.__name__}: {exc}")
            finally:
                self._ws = None

            if self._closing:
                break

            self._set_state(ConnectionState.RECONNECTING)
            if self._reconnect_attempts >= self._max_reconnect_attempts:
                logger.error(
                    "Max reconnection attempts reached",
                    extra={"url": self._url, "attempts": self._reconnect_attempts},
                )
                self._set_state(ConnectionState.PERMANENTLY_FAILED)
                self.permanent_failure.publish(None)
                return

            delay = reconnect_delay(
                self._reconnect_attempts,
                self._reconnect_base_seconds,
                self._reconnect_max_seconds,
            )
            logger.info(
                "Reconnecting stream",
                extra={"url": self._url, "attempt": self._reconnect_attempts + 1, "sleep_seconds": delay},
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            self._reconnect_attempts += 1

    async def _run_session(self) -> None:
        async with self._connect(
            self._url,
            ping_interval=None,
            close_timeout=5,
            max_size=2**22,
        ) as websocket:
            self._ws = websocket
            self._reconnect_attempts = 0
            self._set_state(ConnectionState.CONNECTED)
            logger.info("Stream connected", extra={"url": self._url})

            heartbeat = asyncio.create_task(self._heartbeat_loop(), name="bybit-heartbeat")
            receiver = asyncio.create_task(self._receive_loop(websocket), name="bybit-receive")
            try:
                await self._replay_subscriptions()
                done, _ = await asyncio.wait({heartbeat, receiver}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (heartbeat, receiver):
                    task.cancel()
                await asyncio.gather(heartbeat, receiver, return_exceptions=True)

            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()  # type: ignore[misc]

            if not self._closing:
                logger.warning("Stream closed by remote", extra={"url": self._url})
                self.transient_errors.publish("connection closed by remote")

    async def _receive_loop(self, websocket: Any) -> None:
        while True:
            try:
                payload = await websocket.recv()
            except ConnectionClosed:
                if self._closing:
                    return
                raise
            self._handle_payload(payload)

    def _handle_payload(self, payload: str | bytes) -> None:
        try:
            raw_text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            message = json.loads(raw_text)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Dropping malformed stream payload", extra={"url": self._url})
            return

        if not isinstance(message, dict):
            logger.warning("Dropping non-object stream payload", extra={"url": self._url})
            return

        if is_pong(message):
            self._pong_event.set()
            return

        if "topic" in message:
            self.messages.publish(message)
            return

        if "success" in message:
            if message.get("success"):
                logger.debug("Command acknowledged", extra={"op": message.get("op")})
            else:
                logger.warning(
                    "Command rejected by venue",
                    extra={"op": message.get("op"), "ret_msg": message.get("ret_msg")},
                )
            return

        logger.debug("Ignoring unrecognised stream message", extra={"keys": sorted(message)})

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval_seconds)
            self._pong_event.clear()
            await self._send_command("ping")
            try:
                await asyncio.wait_for(self._pong_event.wait(), timeout=self._pong_timeout_seconds)
            except TimeoutError as exc:
                raise HeartbeatTimeoutError(
                    f"no pong within {self._pong_timeout_seconds}s"
                ) from exc

    async def _replay_subscriptions(self) -> None:
        if self._subscriptions:
            await self._send_command("subscribe", list(self._subscriptions))

    async def _send_command(self, op: str, args: list[str] | None = None) -> None:
        websocket = self._ws
        if websocket is None:
            logger.warning("Cannot send command; stream not connected", extra={"op": op})
            return

        command: dict[str, Any] = {"req_id": str(next(self._req_ids)), "op": op}
        if args is not None:
            command["args"] = args
        try:
            await websocket.send(json.dumps(command))
        except ConnectionClosed:
            logger.warning("Command dropped; stream closed", extra={"op": op, "args": args})

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        logger.debug("Connection state changed", extra={"previous": previous.value, "state": state.value})
        self.state_changes.publish(state)
