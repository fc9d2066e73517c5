"""Interfaces shared by the subscribers that talk to external endpoints."""

from __future__ import annotations

import enum
import queue
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

from extinitiator.store.models import RuntimeConfig

Event = bytes


class ConnectionType(enum.Enum):
    """How a connection to an external endpoint is made."""

    WS = 0
    """Connections made over WebSocket."""
    RPC = 1
    """Connections made by POSTing a JSON payload to the endpoint."""
    CLIENT = 2
    """Connections handled entirely by the blockchain implementation."""
    UNKNOWN = 3
    """The connection method could not be determined; treat as an error."""


@dataclass
class SubConfig:
    """Configuration needed to connect to an external endpoint."""

    endpoint: str


class JsonManager(ABC):
    """Builds blockchain-specific payloads and parses the replies."""

    @abstractmethod
    def get_trigger_json(self) -> Optional[bytes]:
        """Return the payload that opens a new subscription."""

    @abstractmethod
    def parse_response(self, data: bytes) -> Optional[Sequence[Event]]:
        """Return the events in a reply to the trigger payload, or None if there are none."""

    @abstractmethod
    def get_test_json(self) -> Optional[bytes]:
        """Return the payload used to test a connection, or None to skip it."""

    @abstractmethod
    def parse_test_response(self, data: bytes) -> None:
        """Check the reply to the test payload, raising if it is not acceptable."""


class Subscription(ABC):
    """An active subscription to an external endpoint."""

    @abstractmethod
    def unsubscribe(self) -> None:
        """Close the connection and stop everything tied to this subscription."""


class Subscriber(ABC):
    """A subscription to an external endpoint that is not yet active."""

    @abstractmethod
    def subscribe_to_events(
        self, channel: queue.Queue[Event], runtime_config: RuntimeConfig
    ) -> Subscription:
        """Start the subscription; every event is put on ``channel``."""

    @abstractmethod
    def test(self) -> None:
        """Open a connection and exchange the test payload, raising on failure."""