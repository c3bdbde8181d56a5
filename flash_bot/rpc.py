"""JSON-RPC 2.0 over a single websocket.

One ``ChainConnection`` is the connection handle the ``ConnectionManager``
hands out. Requests are multiplexed by id; ``eth_subscription``
notifications are routed to per-subscription queues. Once the socket
closes, or the manager invalidates the handle after a reconnect, every
further use raises ``TransportError``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from flash_bot.errors import QueryError, TransportError

LOGGER = logging.getLogger(__name__)

ABNORMAL_CLOSURE = 1006

_END = object()


class LogSubscription:
    """Async iterator over the logs of one ``eth_subscribe("logs")`` filter."""

    def __init__(self, subscription_id: str, label: str) -> None:
        self.subscription_id = subscription_id
        self.label = label
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def _push(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def _finish(self) -> None:
        self._queue.put_nowait(_END)

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item


class ChainConnection:
    def __init__(
        self,
        socket: Any,
        request_timeout: float = 5.0,
        on_close: Callable[["ChainConnection", int], None] | None = None,
    ) -> None:
        self._socket = socket
        self._request_timeout = request_timeout
        self._on_close = on_close
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscriptions: dict[str, LogSubscription] = {}
        self._valid = True
        self._reader: asyncio.Task[None] | None = None

    @classmethod
    async def open(
        cls,
        url: str,
        request_timeout: float = 5.0,
        on_close: Callable[["ChainConnection", int], None] | None = None,
    ) -> "ChainConnection":
        try:
            socket = await asyncio.wait_for(
                websockets.connect(url, ping_interval=20, ping_timeout=20, max_size=None),
                timeout=request_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError(f"cannot open {url}: {exc}") from exc
        conn = cls(socket, request_timeout=request_timeout, on_close=on_close)
        conn.start()
        return conn

    @property
    def is_valid(self) -> bool:
        return self._valid

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    def invalidate(self) -> None:
        """Marks the handle dead without reporting a disconnect."""
        self._on_close = None
        self._shutdown(ABNORMAL_CLOSURE, report=False)

    async def close(self) -> None:
        self.invalidate()
        try:
            await self._socket.close()
        except (OSError, WebSocketException):
            LOGGER.debug("socket close failed", exc_info=True)
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()

    def _ensure_valid(self) -> None:
        if not self._valid:
            raise TransportError("connection handle is no longer valid")

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        self._ensure_valid()
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        try:
            await self._socket.send(json.dumps(payload))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise QueryError(f"{method} timed out after {self._request_timeout}s") from exc
        except ConnectionClosed as exc:
            raise TransportError(f"{method} failed: socket closed", code=_close_code(exc)) from exc
        finally:
            self._pending.pop(request_id, None)

    async def call(self, to: str, data: bytes, block: str = "latest") -> bytes:
        result = await self.request("eth_call", [{"to": to, "data": "0x" + data.hex()}, block])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise QueryError(f"eth_call to {to} returned {result!r}")
        try:
            return bytes.fromhex(result[2:])
        except ValueError as exc:
            raise QueryError(f"eth_call to {to} returned non-hex data {result!r}") from exc

    async def chain_id(self) -> int:
        return _hex_to_int(await self.request("eth_chainId"), "eth_chainId")

    async def gas_price(self) -> int:
        return _hex_to_int(await self.request("eth_gasPrice"), "eth_gasPrice")

    async def subscribe_logs(self, address: str, topic: str, label: str = "") -> LogSubscription:
        subscription_id = await self.request("eth_subscribe", ["logs", {"address": address, "topics": [topic]}])
        if not isinstance(subscription_id, str):
            raise QueryError(f"eth_subscribe returned {subscription_id!r}")
        subscription = LogSubscription(subscription_id, label or topic)
        self._subscriptions[subscription_id] = subscription
        return subscription

    async def _read_loop(self) -> None:
        code = ABNORMAL_CLOSURE
        try:
            async for raw in self._socket:
                try:
                    self._dispatch(raw)
                except (ValueError, TypeError, AttributeError) as exc:
                    LOGGER.warning("dropping malformed frame: %s", exc)
            code = getattr(self._socket, "close_code", None) or 1000
        except ConnectionClosed as exc:
            code = _close_code(exc)
        except asyncio.CancelledError:
            self._shutdown(code, report=False)
            raise
        except (OSError, WebSocketException) as exc:
            LOGGER.warning("websocket read failed: %s", exc)
        finally:
            self._shutdown(code, report=True)

    def _dispatch(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.debug("dropping non-JSON frame")
            return
        if not isinstance(message, dict):
            return

        if message.get("method") == "eth_subscription":
            params = message.get("params") or {}
            subscription = self._subscriptions.get(params.get("subscription"))
            if subscription is not None:
                subscription._push(params.get("result"))
            return

        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            return
        error = message.get("error")
        if error:
            detail = error.get("message") if isinstance(error, dict) else error
            future.set_exception(QueryError(f"rpc error: {detail}"))
        else:
            future.set_result(message.get("result"))

    def _shutdown(self, code: int, report: bool) -> None:
        if not self._valid:
            return
        self._valid = False
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError("socket closed", code=code))
        self._pending.clear()
        for subscription in self._subscriptions.values():
            subscription._finish()
        self._subscriptions.clear()
        callback = self._on_close
        self._on_close = None
        if report and callback is not None:
            callback(self, code)


def _close_code(exc: ConnectionClosed) -> int:
    rcvd = getattr(exc, "rcvd", None)
    if rcvd is not None:
        return rcvd.code
    return ABNORMAL_CLOSURE


def _hex_to_int(value: Any, method: str) -> int:
    if not isinstance(value, str):
        raise QueryError(f"{method} returned {value!r}")
    try:
        return int(value, 16)
    except ValueError as exc:
        raise QueryError(f"{method} returned {value!r}") from exc
