"""Subscriptions that poll an endpoint with JSON POST requests."""

from __future__ import annotations

import logging
import queue
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional

from extinitiator.store.models import RuntimeConfig
from extinitiator.subscriber.base import Event, JsonManager, Subscriber, Subscription

log = logging.getLogger(__name__)

_DEFAULT_INTERVAL = 5.0


def send_post_request(url: str, body: Optional[bytes]) -> bytes:
    """POST ``body`` as JSON to ``url`` and return the response body.

    Raises ConnectionError when the status code is outside 200-399.
    """
    request = urllib.request.Request(
        url,
        data=body or b"",
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib.request.urlopen(request) as response:
            status = response.status
            payload = response.read()
    except urllib.error.HTTPError as exc:
        exc.close()
        raise ConnectionError(f"got unexpected status code {exc.code}") from exc

    if not 200 <= status < 400:
        raise ConnectionError(f"got unexpected status code {status}")
    return payload


class RpcSubscription(Subscription):
    """An active subscription that polls an RPC endpoint in the background."""

    def __init__(
        self,
        endpoint: str,
        channel: queue.Queue[Event],
        manager: JsonManager,
        interval: float,
    ) -> None:
        self.endpoint = endpoint
        self._channel = channel
        self._manager = manager
        self._interval = interval
        self._done = threading.Event()
        self._thread = threading.Thread(
            target=self._read_messages, name=f"rpc-poll {endpoint}", daemon=True
        )

    def _start(self) -> None:
        self._thread.start()

    def unsubscribe(self) -> None:
        log.info("Unsubscribing from RPC endpoint %s", self.endpoint)
        self._done.set()

    def _poll(self) -> None:
        log.debug("Polling %s", self.endpoint)
        try:
            response = send_post_request(self.endpoint, self._manager.get_trigger_json())
        except Exception as exc:
            log.error("Failed polling %s: %s", self.endpoint, exc)
            return

        events = self._manager.parse_response(response)
        for event in events or ():
            self._channel.put(event)

    def _read_messages(self) -> None:
        # Poll once before waiting for the first interval.
        self._poll()
        while not self._done.wait(self._interval):
            self._poll()


@dataclass
class RpcSubscriber(Subscriber):
    """Configuration for an RPC subscription that is not yet active."""

    endpoint: str
    manager: JsonManager
    interval: float = 0.0

    def test(self) -> None:
        """POST the test payload and let the manager check the reply."""
        response = send_post_request(self.endpoint, self.manager.get_test_json())
        self.manager.parse_test_response(response)

    def subscribe_to_events(
        self, channel: queue.Queue[Event], runtime_config: RuntimeConfig
    ) -> RpcSubscription:
        log.info("Using RPC endpoint: %s", self.endpoint)
        interval = self.interval if self.interval > 0 else _DEFAULT_INTERVAL
        subscription = RpcSubscription(self.endpoint, channel, self.manager, interval)
        subscription._start()
        return subscription