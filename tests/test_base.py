import queue

import pytest

from extinitiator.store.models import RuntimeConfig
from extinitiator.subscriber.base import (
    ConnectionType,
    JsonManager,
    SubConfig,
    Subscriber,
    Subscription,
)


def test_connection_types_are_ordered_as_declared():
    members = list(ConnectionType)
    assert [m.name for m in members] == ["WS", "RPC", "CLIENT", "UNKNOWN"]
    assert sorted(members, key=lambda m: m.value) == members
    assert ConnectionType(members[0].value) is ConnectionType.WS
    assert ConnectionType(members[-1].value) is ConnectionType.UNKNOWN


def test_connection_type_values_are_distinct():
    values = [m.value for m in ConnectionType]
    assert len(set(values)) == len(values)
    assert ConnectionType(ConnectionType.RPC.value) is ConnectionType.RPC


def test_sub_config_holds_endpoint():
    config = SubConfig("ws://localhost:8546/")
    assert config.endpoint == "ws://localhost:8546/"
    assert config == SubConfig(endpoint="ws://localhost:8546/")


def test_json_manager_cannot_be_created_directly():
    with pytest.raises(TypeError):
        JsonManager()


def test_subscription_cannot_be_created_directly():
    with pytest.raises(TypeError):
        Subscription()


def test_subscriber_cannot_be_created_directly():
    with pytest.raises(TypeError):
        Subscriber()


def test_complete_subscriber_hands_back_subscription():
    class Closed(Subscription):
        def __init__(self):
            self.closed = False

        def unsubscribe(self):
            self.closed = True

    class Immediate(Subscriber):
        def subscribe_to_events(self, channel, runtime_config):
            channel.put(b"event")
            return Closed()

        def test(self):
            return None

    channel = queue.Queue()
    sub = Immediate().subscribe_to_events(channel, RuntimeConfig())
    sub.unsubscribe()
    assert sub.closed is True
    assert channel.get_nowait() == b"event"