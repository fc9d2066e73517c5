"""Persistence of endpoints and subscriptions in an SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, ClassVar, Optional, Union

from extinitiator.store.migrations import MigrationError, migrate

log = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the store cannot complete an operation."""


class RecordNotFoundError(StoreError, LookupError):
    """Raised when a requested record does not exist."""


# --- column codecs --------------------------------------------------------


def _read_csv_record(text: str) -> Optional[list[str]]:
    """Read the first CSV record in ``text``; None if there is none."""
    text = text.replace("\r\n", "\n")
    n = len(text)
    pos = 0
    while pos < n and text[pos] == "\n":
        pos += 1
    if pos >= n:
        return None

    record: list[str] = []
    while True:
        if pos < n and text[pos] == '"':
            pos += 1
            parts: list[str] = []
            while True:
                quote = text.find('"', pos)
                if quote < 0:
                    raise ValueError('extraneous or missing " in quoted-field')
                parts.append(text[pos:quote])
                pos = quote + 1
                if pos < n and text[pos] == '"':
                    parts.append('"')
                    pos += 1
                    continue
                break
            record.append("".join(parts))
            if pos >= n or text[pos] == "\n":
                return record
            if text[pos] != ",":
                raise ValueError('extraneous or missing " in quoted-field')
            pos += 1
        else:
            end = pos
            while end < n and text[end] not in ",\n":
                end += 1
            value = text[pos:end]
            if '"' in value:
                raise ValueError('bare " in non-quoted-field')
            record.append(value)
            if end >= n or text[end] == "\n":
                return record
            pos = end + 1


def _quote_csv_field(value: str) -> str:
    if value == "":
        return value
    if value == "\\." or any(c in value for c in ',"\r\n') or value[0].isspace():
        return '"' + value.replace('"', '""') + '"'
    return value


def scan_string_array(src: Union[str, bytes, None, Any]) -> Optional[list[str]]:
    """Parse a comma separated database value into a list of strings.

    Returns None for a missing or empty value. Raises StoreError when the
    value is not well-formed CSV.
    """
    if src is None:
        return None
    if isinstance(src, (bytes, bytearray)):
        text = bytes(src).decode("utf-8")
    else:
        text = str(src)
    try:
        return _read_csv_record(text)
    except ValueError as exc:
        raise StoreError(f"badly formatted csv string array: {exc}") from exc


def string_array_value(arr: Optional[Iterable[str]]) -> str:
    """Encode a list of strings as one CSV line, ending with a newline."""
    return ",".join(_quote_csv_field(item) for item in (arr or ())) + "\n"


def scan_bytes(src: Union[str, bytes, None]) -> Optional[bytes]:
    """Turn a database string into bytes; None stays None."""
    if src is None:
        return None
    if isinstance(src, (bytes, bytearray)):
        return bytes(src)
    if isinstance(src, str):
        return src.encode("utf-8", errors="surrogateescape")
    raise StoreError("failed to scan string")


def bytes_value(data: bytes) -> str:
    """Encode bytes as the string stored in the database."""
    return bytes(data).decode("utf-8", errors="surrogateescape")


# --- models ---------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _stamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class _Model:
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


_MODEL_FIELDS = frozenset({"id", "created_at", "updated_at", "deleted_at"})


@dataclass
class Endpoint(_Model):
    """An external endpoint that subscriptions connect to."""

    url: str = ""
    type: str = ""
    refresh_int: int = 0
    name: str = ""


@dataclass
class _ChildModel(_Model):
    subscription_id: Optional[int] = None

    _table: ClassVar[str] = ""
    _column_names: ClassVar[dict[str, str]] = {}

    @classmethod
    def _columns(cls) -> list[tuple[str, str]]:
        skip = _MODEL_FIELDS | {"subscription_id"}
        return [
            (f.name, cls._column_names.get(f.name, f.name))
            for f in fields(cls)
            if f.name not in skip
        ]


@dataclass
class EthSubscription(_ChildModel):
    """Ethereum-style log subscription (also used by IoTeX and Klaytn)."""

    _table: ClassVar[str] = "eth_subscriptions"
    addresses: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)


@dataclass
class TezosSubscription(_ChildModel):
    """Tezos subscription."""

    _table: ClassVar[str] = "tezos_subscriptions"
    addresses: list[str] = field(default_factory=list)


@dataclass
class SubstrateSubscription(_ChildModel):
    """Substrate subscription."""

    _table: ClassVar[str] = "substrate_subscriptions"
    account_ids: list[str] = field(default_factory=list)


@dataclass
class OntSubscription(_ChildModel):
    """Ontology subscription."""

    _table: ClassVar[str] = "ont_subscriptions"
    addresses: list[str] = field(default_factory=list)


@dataclass
class BinanceSmartChainSubscription(_ChildModel):
    """Binance Smart Chain subscription."""

    _table: ClassVar[str] = "binance_smart_chain_subscriptions"
    addresses: list[str] = field(default_factory=list)


@dataclass
class NEARSubscription(_ChildModel):
    """NEAR subscription."""

    _table: ClassVar[str] = "near_subscriptions"
    account_ids: list[str] = field(default_factory=list)


@dataclass
class CfxSubscription(_ChildModel):
    """Conflux subscription."""

    _table: ClassVar[str] = "cfx_subscriptions"
    addresses: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)


@dataclass
class KeeperSubscription(_ChildModel):
    """Keeper upkeep subscription."""

    _table: ClassVar[str] = "keeper_subscriptions"
    _column_names: ClassVar[dict[str, str]] = {"from_address": "from"}
    address: str = ""
    upkeep_id: str = ""
    from_address: bytes = b""


@dataclass
class BSNIritaSubscription(_ChildModel):
    """BSN-IRITA service subscription."""

    _table: ClassVar[str] = "bsn_irita_subscriptions"
    addresses: list[str] = field(default_factory=list)
    service_name: str = ""


@dataclass
class AgoricSubscription(_ChildModel):
    """Agoric subscription."""

    _table: ClassVar[str] = "agoric_subscriptions"


@dataclass
class Subscription(_Model):
    """A job's subscription to an endpoint, with its chain-specific settings."""

    reference_id: str = ""
    job: str = ""
    endpoint_name: str = ""
    endpoint: Endpoint = field(default_factory=Endpoint)
    ethereum: EthSubscription = field(default_factory=EthSubscription)
    tezos: TezosSubscription = field(default_factory=TezosSubscription)
    substrate: SubstrateSubscription = field(default_factory=SubstrateSubscription)
    ontology: OntSubscription = field(default_factory=OntSubscription)
    binance_smart_chain: BinanceSmartChainSubscription = field(
        default_factory=BinanceSmartChainSubscription
    )
    near: NEARSubscription = field(default_factory=NEARSubscription)
    conflux: CfxSubscription = field(default_factory=CfxSubscription)
    keeper: KeeperSubscription = field(default_factory=KeeperSubscription)
    bsn_irita: BSNIritaSubscription = field(default_factory=BSNIritaSubscription)
    agoric: AgoricSubscription = field(default_factory=AgoricSubscription)


_CHILD_ATTRIBUTES = (
    "ethereum",
    "tezos",
    "substrate",
    "ontology",
    "binance_smart_chain",
    "near",
    "conflux",
    "keeper",
    "bsn_irita",
    "agoric",
)

_CHAIN_ATTRIBUTE = {
    "ethereum": "ethereum",
    "iotex": "ethereum",
    "klaytn": "ethereum",
    "tezos": "tezos",
    "substrate": "substrate",
    "ontology": "ontology",
    "binance-smart-chain": "binance_smart_chain",
    "conflux": "conflux",
    "near": "near",
    "keeper": "keeper",
    "bsn-irita": "bsn_irita",
    "agoric": "agoric",
}


def _encode(value: Any) -> Any:
    if isinstance(value, list):
        return string_array_value(value)
    return value


def _decode(default: Any, value: Any) -> Any:
    if isinstance(default, list):
        return scan_string_array(value) or []
    if isinstance(default, bytes):
        return scan_bytes(value) or b""
    if isinstance(default, str):
        return "" if value is None else str(value)
    return value


def _model_kwargs(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "created_at": _parse_time(row["created_at"]),
        "updated_at": _parse_time(row["updated_at"]),
        "deleted_at": _parse_time(row["deleted_at"]),
    }


def _endpoint_from_row(row: sqlite3.Row) -> Endpoint:
    return Endpoint(
        **_model_kwargs(row),
        url=row["url"] or "",
        type=row["type"] or "",
        refresh_int=row["refresh_int"] or 0,
        name=row["name"],
    )


def _subscription_from_row(row: sqlite3.Row) -> Subscription:
    return Subscription(
        **_model_kwargs(row),
        reference_id=row["reference_id"],
        job=row["job"] or "",
        endpoint_name=row["endpoint_name"] or "",
    )


# --- client ---------------------------------------------------------------


class Client:
    """A connection to the store's database."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the connection to the database."""
        self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        self._conn.execute("BEGIN")
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")

    @staticmethod
    @contextmanager
    def _errors(description: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            raise StoreError(f"{description}: {exc}") from exc

    def _load_child(self, sub: Subscription, attribute: str) -> _ChildModel:
        child_type = type(getattr(sub, attribute))
        with self._errors(f"loading {child_type.__name__}"):
            row = self._conn.execute(
                f"SELECT * FROM {child_type._table} "
                "WHERE subscription_id = ? AND deleted_at IS NULL ORDER BY id LIMIT 1",
                (sub.id,),
            ).fetchone()
        if row is None:
            raise RecordNotFoundError(
                f"no {child_type.__name__} for subscription {sub.id}"
            )
        default = child_type()
        values = {
            attr: _decode(getattr(default, attr), row[column])
            for attr, column in child_type._columns()
        }
        return child_type(
            **_model_kwargs(row), subscription_id=row["subscription_id"], **values
        )

    def _prepare_subscription(self, raw: Subscription) -> Subscription:
        endpoint = self.load_endpoint(raw.endpoint_name)
        sub = Subscription(
            id=raw.id,
            created_at=raw.created_at,
            updated_at=raw.updated_at,
            deleted_at=raw.deleted_at,
            reference_id=raw.reference_id,
            job=raw.job,
            endpoint_name=raw.endpoint_name,
            endpoint=endpoint,
        )
        attribute = _CHAIN_ATTRIBUTE.get(endpoint.type)
        if attribute is not None:
            setattr(sub, attribute, self._load_child(sub, attribute))
        return sub

    def load_subscriptions(self) -> list[Subscription]:
        """Return every subscription with its endpoint and chain settings.

        Subscriptions that cannot be completed are logged and left out.
        """
        with self._errors("loading subscriptions"):
            rows = self._conn.execute(
                "SELECT * FROM subscriptions WHERE deleted_at IS NULL ORDER BY id"
            ).fetchall()
        subs: list[Subscription] = []
        for row in rows:
            try:
                subs.append(self._prepare_subscription(_subscription_from_row(row)))
            except StoreError as exc:
                log.error("%s", exc)
        return subs

    def load_subscription(self, job_id: str) -> Subscription:
        """Return the subscription for ``job_id``."""
        with self._errors("loading subscription"):
            row = self._conn.execute(
                "SELECT * FROM subscriptions WHERE job = ? AND deleted_at IS NULL "
                "ORDER BY id LIMIT 1",
                (job_id,),
            ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"no subscription for job {job_id}")
        return self._prepare_subscription(_subscription_from_row(row))

    def save_subscription(self, sub: Subscription) -> None:
        """Check that the endpoint exists, then store ``sub`` and its chain settings."""
        if not sub.endpoint_name:
            sub.endpoint_name = sub.endpoint.name
        try:
            endpoint = self.load_endpoint(sub.endpoint_name)
        except StoreError:
            endpoint = None
        if endpoint is None or endpoint.name != sub.endpoint_name:
            raise StoreError(f"unable to get endpoint {sub.endpoint_name}")

        now = _now()
        stamp = _stamp(now)
        with self._errors("saving subscription"), self._transaction():
            cursor = self._conn.execute(
                "INSERT INTO subscriptions "
                "(created_at, updated_at, reference_id, job, endpoint_name) "
                "VALUES (?, ?, ?, ?, ?)",
                (stamp, stamp, sub.reference_id, sub.job, sub.endpoint_name),
            )
            sub_id = cursor.lastrowid
            for attribute in _CHILD_ATTRIBUTES:
                child: _ChildModel = getattr(sub, attribute)
                columns = child._columns()
                names = ", ".join(
                    ["created_at", "updated_at", "subscription_id"]
                    + [f'"{column}"' for _, column in columns]
                )
                marks = ", ".join("?" * (3 + len(columns)))
                values = [_encode(getattr(child, attr)) for attr, _ in columns]
                child_cursor = self._conn.execute(
                    f"INSERT INTO {child._table} ({names}) VALUES ({marks})",
                    (stamp, stamp, sub_id, *values),
                )
                child.id = child_cursor.lastrowid
                child.subscription_id = sub_id
                child.created_at = child.updated_at = now
        sub.id = sub_id
        sub.created_at = sub.updated_at = now

    def delete_subscription(self, sub: Subscription) -> None:
        """Soft-delete ``sub``; a subscription never saved is left alone."""
        if sub.id is None:
            return
        now = _now()
        with self._errors("deleting subscription"):
            self._conn.execute(
                "UPDATE subscriptions SET deleted_at = ? "
                "WHERE id = ? AND deleted_at IS NULL",
                (_stamp(now), sub.id),
            )
        sub.deleted_at = now

    def load_endpoint(self, name: str) -> Endpoint:
        """Return the endpoint called ``name``."""
        with self._errors("loading endpoint"):
            row = self._conn.execute(
                "SELECT * FROM endpoints WHERE name = ? AND deleted_at IS NULL "
                "ORDER BY id LIMIT 1",
                (name,),
            ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"endpoint {name} not found")
        return _endpoint_from_row(row)

    def restore_endpoint(self, name: str) -> None:
        """Undo the soft deletion of any endpoint called ``name``."""
        with self._errors("restoring endpoint"):
            self._conn.execute(
                "UPDATE endpoints SET deleted_at = NULL WHERE name = ?", (name,)
            )

    def save_endpoint(self, endpoint: Endpoint) -> None:
        """Store ``endpoint``, overwriting any earlier record with the same name."""
        now = _now()
        stamp = _stamp(now)
        with self._errors("saving endpoint"), self._transaction():
            row = self._conn.execute(
                "SELECT * FROM endpoints WHERE name = ? ORDER BY id LIMIT 1",
                (endpoint.name,),
            ).fetchone()
            if row is None:
                cursor = self._conn.execute(
                    "INSERT INTO endpoints "
                    "(created_at, updated_at, url, type, refresh_int, name) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        stamp,
                        stamp,
                        endpoint.url,
                        endpoint.type,
                        endpoint.refresh_int,
                        endpoint.name,
                    ),
                )
                endpoint.id = cursor.lastrowid
                endpoint.created_at = now
            else:
                self._conn.execute(
                    "UPDATE endpoints SET url = ?, type = ?, refresh_int = ?, "
                    "updated_at = ? WHERE id = ?",
                    (
                        endpoint.url,
                        endpoint.type,
                        endpoint.refresh_int,
                        stamp,
                        row["id"],
                    ),
                )
                endpoint.id = row["id"]
                endpoint.created_at = _parse_time(row["created_at"])
        endpoint.updated_at = now
        self.restore_endpoint(endpoint.name)
        endpoint.deleted_at = None

    def delete_endpoint(self, name: str) -> None:
        """Soft-delete the endpoint called ``name`` and every subscription using it."""
        stamp = _stamp(_now())
        with self._errors("deleting endpoint"), self._transaction():
            self._conn.execute(
                "UPDATE endpoints SET deleted_at = ? "
                "WHERE name = ? AND deleted_at IS NULL",
                (stamp, name),
            )
            self._conn.execute(
                "UPDATE subscriptions SET deleted_at = ? "
                "WHERE endpoint_name = ? AND deleted_at IS NULL",
                (stamp, name),
            )

    def delete_all_endpoints_except(self, names: Iterable[str]) -> None:
        """Delete every endpoint whose name is not in ``names``."""
        keep = set(names)
        with self._errors("listing endpoints"):
            rows = self._conn.execute(
                "SELECT name FROM endpoints WHERE deleted_at IS NULL ORDER BY id"
            ).fetchall()
        for row in rows:
            if row["name"] not in keep:
                self.delete_endpoint(row["name"])


def connect_to_db(uri: str) -> Client:
    """Open the database at ``uri``, apply pending migrations and return a Client."""
    try:
        connection = sqlite3.connect(
            uri,
            isolation_level=None,
            check_same_thread=False,
            uri=uri.startswith("file:"),
        )
    except sqlite3.Error as exc:
        raise StoreError(f"unable to open {uri} for DB: {exc}") from exc
    connection.row_factory = sqlite3.Row
    try:
        connection.execute("PRAGMA foreign_keys = ON")
        migrate(connection)
    except (MigrationError, sqlite3.Error) as exc:
        connection.close()
        raise StoreError(f"migrating database: {exc}") from exc
    return Client(connection)