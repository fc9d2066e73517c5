# extinitiator

Subscribe to external blockchain endpoints and keep track of what is subscribed to.

The package has two parts:

- `extinitiator.subscriber` connects to an endpoint and delivers events onto a `queue.Queue`.
  - `rpc.RpcSubscriber` polls an HTTP endpoint by POSTing a JSON payload: once at once, then every `interval` seconds (5 seconds when `interval` is 0 or less).
  - `ws.WebsocketSubscriber` opens a WebSocket, sends the trigger payload and ignores the first message it receives, which is taken as the subscription's confirmation. When the connection drops it waits 3 seconds and dials again until it succeeds or the subscription is cancelled.
  - `base` holds the interfaces: `JsonManager`, `Subscriber`, `Subscription`, plus `ConnectionType` and `SubConfig`.
- `extinitiator.store` keeps endpoints and subscriptions in an SQLite database.
  - `migrations` builds and updates the schema step by step (`migrate`, `rollback_last`, `applied_migrations`).
  - `database.Client` saves, loads and soft-deletes endpoints and subscriptions.
  - `models.RuntimeConfig` carries settings passed to subscribers.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Subscribing

A subscriber needs a `JsonManager`. The manager builds the payloads for the blockchain and turns replies into events. `parse_response` returns a sequence of events (bytes), or `None` when a reply holds none.

```python
import queue

from extinitiator.store.models import RuntimeConfig
from extinitiator.subscriber.base import JsonManager
from extinitiator.subscriber.rpc import RpcSubscriber


class EchoManager(JsonManager):
    def get_trigger_json(self):
        return b'{"method": "poll"}'

    def parse_response(self, data):
        return [data]

    def get_test_json(self):
        return None

    def parse_test_response(self, data):
        return None


events = queue.Queue()
subscriber = RpcSubscriber(endpoint="http://localhost:8545/", manager=EchoManager(), interval=1.0)
subscription = subscriber.subscribe_to_events(events, RuntimeConfig())
try:
    print(events.get())
finally:
    subscription.unsubscribe()
```

`WebsocketSubscriber(endpoint="ws://localhost:8546/", manager=...)` is used the same way.

`test()` checks an endpoint before subscribing:

- `RpcSubscriber.test()` POSTs the manager's test payload and passes the reply to `parse_test_response`.
- `WebsocketSubscriber.test()` opens a connection. If `get_test_json()` returns a payload, it sends it and waits up to 5 seconds for a reply.

Either raises if the endpoint cannot be reached. `send_post_request(url, body)` in `subscriber.rpc` raises `ConnectionError` for status codes outside 200–399.

## Storing subscriptions

```python
from extinitiator.store.database import Endpoint, EthSubscription, Subscription, connect_to_db

with connect_to_db("initiator.sqlite3") as client:
    client.save_endpoint(Endpoint(name="eth-main", url="ws://localhost:8546/", type="ethereum"))
    client.save_subscription(
        Subscription(
            reference_id="abc",
            job="job-1",
            endpoint_name="eth-main",
            ethereum=EthSubscription(addresses=["0x12345"], topics=["0xabcde"]),
        )
    )
    for sub in client.load_subscriptions():
        print(sub.job, sub.endpoint.name, sub.ethereum.addresses)
```

`connect_to_db` takes a file path, or a `file:` URI, and runs any schema migrations that have not run yet.

Saving and loading:

- `save_subscription` raises `StoreError` if the named endpoint does not exist.
- `save_endpoint` overwrites an endpoint of the same name and restores it if it was deleted.
- `load_subscription(job_id)` and `load_endpoint(name)` raise `RecordNotFoundError` when nothing matches.
- Loaded subscriptions carry the chain settings that match their endpoint's `type`, for example `ethereum`, `tezos`, `substrate` or `keeper`.

Deleting:

- `delete_subscription` soft-deletes a single subscription.
- `delete_endpoint` soft-deletes an endpoint and the subscriptions that use it.
- `delete_all_endpoints_except` keeps only the endpoints you name.

`scan_string_array` / `string_array_value` and `scan_bytes` / `bytes_value` convert list and byte columns to and from their stored form. List columns are stored as one CSV line.

## What this package does not do

- It has no command-line program and no HTTP service. It is a library to be driven from your own code.
- It has no built-in managers for particular blockchains; you supply a `JsonManager`.
- Storage is SQLite only.