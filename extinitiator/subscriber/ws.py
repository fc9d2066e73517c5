"""Subscriptions that listen to an endpoint over a WebSocket."""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass

import websocket
from websocket import ABNF

from extinitiator.store.models import RuntimeConfig
from extinitiator.subscriber.base import Event, JsonManager, Subscriber, Subscription

log = logging.getLogger(__name__)

_TEST_TIMEOUT = 5.0
_RECONNECT_DELAY = 3.0


def _dial(endpoint: str) -> websocket.WebSocket:
    return websocket.create_connection(endpoint)


def _hard_close(conn: websocket.WebSocket) -> None:
    """Close the connection at once, waking any thread blocked reading it."""
    sock = conn.sock
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    conn.shutdown()


class WebsocketSubscription(Subscription):
    """An active subscription over a WebSocket, reconnecting when the link drops."""

    def __init__(
        self,
        endpoint: str,
        connection: websocket.WebSocket,
        channel: queue.Queue[Event],
        manager: JsonManager,
    ) -> None:
        self.endpoint = endpoint
        self._conn = connection
        self._channel = channel
        self._manager = manager
        self._closing = False
        self._confirmed = False
        self._lock = threading.Lock()

    def _start(self) -> None:
        threading.Thread(
            target=self._read_messages, name=f"ws-read {self.endpoint}", daemon=True
        ).start()
        self._send_trigger()

    def unsubscribe(self) -> None:
        log.info("Unsubscribing from WS endpoint %s", self.endpoint)
        with self._lock:
            self._closing = True
            conn = self._conn
        try:
            conn.send_close()
        except Exception:
            pass
        _hard_close(conn)

    def _force_close(self) -> None:
        with self._lock:
            self._closing = False
            conn = self._conn
        _hard_close(conn)

    def _send_trigger(self) -> None:
        try:
            self._conn.send(self._manager.get_trigger_json(), opcode=ABNF.OPCODE_TEXT)
        except Exception:
            self._force_close()
            return
        log.info("Connected to %s", self.endpoint)

    def _read_messages(self) -> None:
        while True:
            conn = self._conn
            try:
                opcode, message = conn.recv_data()
            except Exception:
                opcode, message = ABNF.OPCODE_CLOSE, b""

            if opcode == ABNF.OPCODE_CLOSE:
                _hard_close(conn)
                if self._closing or not self._reconnect():
                    return
                continue

            # The first message confirms the subscription and carries no event.
            if not self._confirmed:
                self._confirmed = True
                continue

            events = self._manager.parse_response(message)
            for event in events or ():
                self._channel.put(event)

    def _reconnect(self) -> bool:
        """Dial again until it succeeds; False if unsubscribed meanwhile."""
        while not self._closing:
            log.warning(
                "Lost WS connection to %s, retrying in %ss", self.endpoint, _RECONNECT_DELAY
            )
            time.sleep(_RECONNECT_DELAY)
            if self._closing:
                return False
            try:
                conn = _dial(self.endpoint)
            except Exception as exc:
                log.error("Reconnect failed: %s", exc)
                continue
            with self._lock:
                if self._closing:
                    _hard_close(conn)
                    return False
                self._conn = conn
            self._send_trigger()
            return True
        return False


@dataclass
class WebsocketSubscriber(Subscriber):
    """Configuration for a WebSocket subscription that is not yet active."""

    endpoint: str
    manager: JsonManager

    def test(self) -> None:
        """Open a connection and, if the manager has one, exchange the test payload."""
        conn = _dial(self.endpoint)
        try:
            payload = self.manager.get_test_json()
            if payload is None:
                return
            conn.send(payload, opcode=ABNF.OPCODE_BINARY)
            conn.settimeout(_TEST_TIMEOUT)
            try:
                opcode, body = conn.recv_data()
            except (websocket.WebSocketTimeoutException, TimeoutError) as exc:
                raise TimeoutError("timeout from test payload") from exc
            except (websocket.WebSocketException, OSError) as exc:
                raise ConnectionError(
                    "failed reading test response from WS endpoint"
                ) from exc
            if opcode == ABNF.OPCODE_CLOSE:
                raise ConnectionError("failed reading test response from WS endpoint")
            self.manager.parse_test_response(body)
        finally:
            _hard_close(conn)

    def subscribe_to_events(
        self, channel: queue.Queue[Event], runtime_config: RuntimeConfig
    ) -> WebsocketSubscription:
        log.info("Connecting to WS endpoint: %s", self.endpoint)
        conn = _dial(self.endpoint)
        subscription = WebsocketSubscription(self.endpoint, conn, channel, self.manager)
        subscription._start()
        return subscription