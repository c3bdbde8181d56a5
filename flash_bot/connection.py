"""Lifecycle of the single streaming connection.

The manager owns exactly one live ``ChainConnection``. On disconnect it
runs one reconnect sequence at a time with bounded exponential backoff
and gives up for good after ``max_attempts`` consecutive failures. It
only re-establishes transport; retrying individual requests is up to
the caller.

State is mutated only from the event loop thread. If this ever moves to
preemptive threads, ``_reconnect_task`` and the state fields need a lock.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from flash_bot.config import NetworkSettings, ReconnectSettings
from flash_bot.errors import ExhaustedRetries, TransportError
from flash_bot.rpc import ChainConnection

LOGGER = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[ChainConnection]]
ReconnectCallback = Callable[[ChainConnection], Any]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FATAL = "fatal"


@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay_ms: int = 5000
    multiplier: int = 2
    cap_delay_ms: int = 60000
    max_attempts: int = 10

    @classmethod
    def from_settings(cls, settings: ReconnectSettings) -> "ReconnectPolicy":
        return cls(
            base_delay_ms=settings.base_delay_ms,
            multiplier=settings.multiplier,
            cap_delay_ms=settings.cap_delay_ms,
            max_attempts=settings.max_attempts,
        )

    def delay_ms(self, attempt: int) -> int:
        """min(base * multiplier^(attempt-1), cap) for attempt >= 1."""
        if attempt < 1:
            raise ValueError("attempt numbering starts at 1")
        return min(self.base_delay_ms * self.multiplier ** (attempt - 1), self.cap_delay_ms)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


class ConnectionManager:
    def __init__(
        self,
        network: NetworkSettings,
        policy: ReconnectPolicy | None = None,
        connector: Connector | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._network = network
        self._policy = policy or ReconnectPolicy()
        self._connector = connector or ChainConnection.open
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._handle: ChainConnection | None = None
        self._listeners: list[ReconnectCallback] = []
        self._reconnect_task: asyncio.Task[None] | None = None
        self._fatal: asyncio.Future[None] | None = None
        self._closing = False
        self._retiring: set[asyncio.Future[None]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def handle(self) -> ChainConnection | None:
        return self._handle

    @property
    def reconnect_in_flight(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _transition(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        level = logging.CRITICAL if state is ConnectionState.FATAL else logging.INFO
        LOGGER.log(level, "connection %s -> %s", self._state.value, state.value)
        self._state = state

    async def connect(self) -> ChainConnection:
        """Opens a fresh connection and verifies it serves the configured chain.

        Raises TransportError when the endpoint is unreachable or the
        identity check fails. Any previous handle is invalidated first.
        """
        if self._state is ConnectionState.FATAL:
            raise ExhaustedRetries(self._attempts)
        self._retire_handle()
        self._transition(ConnectionState.CONNECTING)
        try:
            handle = await self._connector(
                self._network.wss_url,
                request_timeout=self._network.rpc_timeout_seconds,
                on_close=self._handle_closed,
            )
        except TransportError:
            self._transition(ConnectionState.DISCONNECTED)
            raise
        except OSError as exc:
            self._transition(ConnectionState.DISCONNECTED)
            raise TransportError(f"cannot reach {self._network.wss_url}: {exc}") from exc

        try:
            chain_id = await handle.chain_id()
        except Exception as exc:
            await handle.close()
            self._transition(ConnectionState.DISCONNECTED)
            raise TransportError(f"identity check failed: {exc}") from exc
        if chain_id != self._network.chain_id:
            await handle.close()
            self._transition(ConnectionState.DISCONNECTED)
            raise TransportError(f"endpoint serves chain {chain_id}, expected {self._network.chain_id}")

        self._handle = handle
        self._attempts = 0
        self._transition(ConnectionState.CONNECTED)
        return handle

    def _retire_handle(self) -> None:
        if self._handle is not None:
            # Invalidate silently so the old socket cannot trigger a second reconnect.
            self._handle.invalidate()
            closing = asyncio.ensure_future(self._handle.close())
            self._retiring.add(closing)
            closing.add_done_callback(self._retiring.discard)
            self._handle = None

    def on_reconnected(self, callback: ReconnectCallback) -> Callable[[], None]:
        """Registers an observer for fresh handles. Returns an unsubscribe callable."""
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _handle_closed(self, handle: ChainConnection, code: int) -> None:
        if handle is not self._handle:
            return
        self.on_disconnect(code)

    def on_disconnect(self, code: int) -> None:
        """Starts a reconnect sequence unless one is already running."""
        if self._closing or self._state is ConnectionState.FATAL:
            return
        if self.reconnect_in_flight:
            LOGGER.debug("disconnect code=%s ignored: reconnect already in flight", code)
            return
        LOGGER.error("connection closed (code: %s)", code)
        self._transition(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        while True:
            if self._policy.exhausted(self._attempts):
                self._transition(ConnectionState.FATAL)
                LOGGER.critical("max reconnection attempts (%d) reached", self._policy.max_attempts)
                self._fail(ExhaustedRetries(self._attempts))
                return

            self._attempts += 1
            delay_ms = self._policy.delay_ms(self._attempts)
            LOGGER.info(
                "reconnecting in %.1fs (attempt %d/%d)",
                delay_ms / 1000,
                self._attempts,
                self._policy.max_attempts,
            )
            await self._sleep(delay_ms / 1000)
            if self._closing:
                return

            try:
                handle = await self.connect()
            except TransportError as exc:
                LOGGER.error("reconnection failed: %s", exc)
                self._transition(ConnectionState.RECONNECTING)
                continue

            await self._notify(handle)
            if self._closing:
                return
            current = self._handle
            if current is not None and current.is_valid:
                return
            # The fresh handle died while observers were refreshing; its close was not reported.
            LOGGER.error("connection lost during reconnect refresh")
            self._transition(ConnectionState.RECONNECTING)

    async def _notify(self, handle: ChainConnection) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(handle)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("reconnect listener failed")

    def _fatal_future(self) -> asyncio.Future[None]:
        if self._fatal is None:
            self._fatal = asyncio.get_running_loop().create_future()
        return self._fatal

    def _fail(self, exc: ExhaustedRetries) -> None:
        future = self._fatal_future()
        if not future.done():
            future.set_exception(exc)

    async def wait_fatal(self) -> None:
        """Blocks until the manager gives up, then raises ExhaustedRetries."""
        await self._fatal_future()

    async def close(self) -> None:
        self._closing = True
        if self.reconnect_in_flight:
            self._reconnect_task.cancel()
        if self._handle is not None:
            handle = self._handle
            self._handle = None
            await handle.close()
        if self._retiring:
            await asyncio.gather(*self._retiring, return_exceptions=True)
        if self._state is not ConnectionState.FATAL:
            self._transition(ConnectionState.DISCONNECTED)
