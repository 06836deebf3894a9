import json
import time
import queue
import logging
import itertools
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import ClientConnection, connect as ws_connect
from rustctl.errors import RconProtocolError, RconTimeoutError, ReadinessTimeoutError
from rustctl.game.snapshot import GameServerState

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RCONMessage:
    """
    One WebRCON frame. On the wire the keys must be capitalized, otherwise the
    game server crashes.
    """
    message: str
    identifier: int

    def to_json(self) -> str:
        return json.dumps({"Message": self.message, "Identifier": self.identifier})

    @classmethod
    def from_json(cls, payload: str) -> "RCONMessage":
        """Deserializes a text frame. Extra keys (Type, Stacktrace, ...) are ignored."""
        try:
            data: Any = json.loads(payload)
        except json.JSONDecodeError as e:
            raise RconProtocolError(f"could not deserialize RCON message: {e}") from e
        if not isinstance(data, dict):
            raise RconProtocolError("could not deserialize RCON message: not an object")
        message, identifier = data.get("Message"), data.get("Identifier")
        if not isinstance(message, str) or isinstance(identifier, bool) or not isinstance(identifier, int):
            raise RconProtocolError("could not deserialize RCON message: 'Message' or 'Identifier' missing or mistyped")
        return cls(message=message, identifier=identifier)


class RconRelay:
    """
    Sends RCON commands to the running game server over its WebSocket and
    matches each response to its request by identifier.

    The server broadcasts unrelated messages (chat, log lines) on the same
    socket; those are logged and discarded while waiting for a response.
    """

    def __init__(self, websocket: ClientConnection, response_timeout: float = 10.0):
        self.websocket = websocket
        self.response_timeout = response_timeout
        self._identifiers = itertools.count(1)
        self._lock = threading.Lock()

    @classmethod
    def connect(
        cls,
        readiness: "queue.Queue[GameServerState]",
        host: str,
        port: int,
        password: str,
        startup_timeout: float,
        connect_timeout: float = 10.0,
        response_timeout: float = 10.0,
        connector: Callable[..., ClientConnection] = ws_connect,
    ) -> "RconRelay":
        """
        Waits for the server to report it is playable, then opens the RCON WebSocket.

        :raises ReadinessTimeoutError: If no readiness signal arrives within `startup_timeout` seconds.
        :raises RconProtocolError: If the WebSocket handshake fails.
        """
        try:
            state = readiness.get(timeout=startup_timeout)
        except queue.Empty:
            raise ReadinessTimeoutError(
                f"server startup completion not detected within {startup_timeout / 60:.1f} minutes"
            ) from None
        if state is not GameServerState.PLAYABLE:
            raise ReadinessTimeoutError(f"unexpected readiness signal: {state}")

        log.info(f"Connecting to RCON at ws://{host}:{port}/...")
        try:
            websocket = connector(f"ws://{host}:{port}/{password}", open_timeout=connect_timeout)
        except (OSError, TimeoutError, WebSocketException) as e:
            raise RconProtocolError(f"cannot connect WebSocket for RCON: {e}") from e
        return cls(websocket, response_timeout)

    def command(self, text: str, timeout: Optional[float] = None) -> RCONMessage:
        """
        Sends one command and blocks until the response carrying the same identifier arrives.

        :raises RconProtocolError: On send failure, closed connection, a non-text frame or an undecodable payload.
        :raises RconTimeoutError: If no matching response arrives in time.
        """
        timeout = self.response_timeout if timeout is None else timeout
        # One request in flight per connection.
        with self._lock:
            request = RCONMessage(message=text, identifier=next(self._identifiers))
            try:
                self.websocket.send(request.to_json())
            except (OSError, WebSocketException) as e:
                raise RconProtocolError(f"cannot send RCON command over WebSocket: {e}") from e
            log.debug(f"Sent RCON command #{request.identifier}: '{text}' -- Waiting for response...")

            deadline = time.monotonic() + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RconTimeoutError(f"no response to RCON command '{text}' within {timeout:.0f} seconds")
                try:
                    frame = self.websocket.recv(timeout=remaining)
                except TimeoutError:
                    raise RconTimeoutError(f"no response to RCON command '{text}' within {timeout:.0f} seconds") from None
                except ConnectionClosed as e:
                    raise RconProtocolError(f"RCON connection closed while waiting for a response: {e}") from e
                except (OSError, WebSocketException) as e:
                    raise RconProtocolError(f"cannot read RCON message over WebSocket: {e}") from e

                if not isinstance(frame, str):
                    raise RconProtocolError(
                        f"could not get response to RCON command: got unexpected kind of WebSocket message: {type(frame).__name__}"
                    )
                response = RCONMessage.from_json(frame)
                log.debug(f"Got RCON message with ID {response.identifier}: {response.message}")
                if response.identifier == request.identifier:
                    return response

    def close(self) -> None:
        self.websocket.close()

    def __enter__(self) -> "RconRelay":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
