import asyncio
import logging
import ssl
from enum import Enum
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .exceptions import NotConnectedError, ReconnectAttemptsExhausted


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


def make_ssl_context(
    ca_cert: Optional[str] = None,
    client_cert: Optional[str] = None,
    client_key: Optional[str] = None,
) -> Optional[ssl.SSLContext]:
    if not (ca_cert or client_cert):
        return None
    ctx = ssl.create_default_context(cafile=ca_cert)
    if client_cert:
        ctx.load_cert_chain(client_cert, client_key)
    return ctx


class WebSocketTransport:
    """One OCPP WebSocket at a time; sends are serialized."""

    def __init__(
        self,
        url: str,
        subprotocol: str = "ocpp1.6",
        ssl_context: Optional[ssl.SSLContext] = None,
        logger: Optional[logging.Logger] = None,
        open_timeout: float = 10.0,
    ):
        self.url = url
        self.subprotocol = subprotocol
        self.ssl_context = ssl_context
        self.open_timeout = open_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.state = ConnectionState.DISCONNECTED
        self._ws = None
        self._send_lock = asyncio.Lock()

    def is_open(self) -> bool:
        return self.state is ConnectionState.CONNECTED and self._ws is not None

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            self.logger.info(f"Connection state: {self.state.value} -> {state.value}")
            self.state = state

    async def connect(self) -> None:
        await self.close()
        self._set_state(ConnectionState.CONNECTING)
        kwargs = {"subprotocols": [self.subprotocol], "open_timeout": self.open_timeout}
        if self.ssl_context is not None:
            kwargs["ssl"] = self.ssl_context
        self.logger.info(f"Connecting to CSMS: {self.url}")
        try:
            self._ws = await websockets.connect(self.url, **kwargs)
        except Exception:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        self._set_state(ConnectionState.CONNECTED)

    async def send(self, message: str) -> None:
        async with self._send_lock:
            if not self.is_open():
                raise NotConnectedError(f"cannot send, connection is {self.state.value}")
            try:
                await self._ws.send(message)
            except ConnectionClosed:
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            self.logger.info(f"> {message}")

    async def recv(self) -> str:
        if self._ws is None:
            raise NotConnectedError("cannot receive, not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as e:
            self.logger.warning(f"Connection closed by peer: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        self.logger.info(f"< {raw}")
        return raw

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._set_state(ConnectionState.CLOSING)
        try:
            await ws.close()
        except Exception as e:
            self.logger.warning(f"Error while closing WebSocket: {e}")
        finally:
            self._set_state(ConnectionState.DISCONNECTED)


class Backoff:
    """Exponential reconnect delays: base, 2*base, 4*base ... capped."""

    def __init__(self, base: float = 1.0, cap: float = 30.0, max_attempts: int = 10):
        self.base = base
        self.cap = cap
        self.max_attempts = max_attempts
        self.attempts = 0

    def reset(self) -> None:
        self.attempts = 0

    def next_delay(self) -> float:
        if self.attempts >= self.max_attempts:
            raise ReconnectAttemptsExhausted(self.attempts)
        self.attempts += 1
        return min(self.base * 2 ** (self.attempts - 1), self.cap)
