"""Schema migrations for the store, applied in order and tracked in a table."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

MIGRATIONS_TABLE = "migrations"

_MODEL_COLUMNS: tuple[tuple[str, str], ...] = (
    ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
    ("created_at", "TIMESTAMP"),
    ("updated_at", "TIMESTAMP"),
    ("deleted_at", "TIMESTAMP"),
)

_SUBSCRIPTION_FK = (
    "FOREIGN KEY (subscription_id) REFERENCES subscriptions(id) "
    "ON DELETE CASCADE ON UPDATE CASCADE"
)


class MigrationError(Exception):
    """Raised when a migration cannot be applied or rolled back."""


@dataclass(frozen=True)
class Migration:
    """A single schema change, identified by ``id``."""

    id: str
    migrate: Callable[[sqlite3.Connection], None]
    rollback: Optional[Callable[[sqlite3.Connection], None]] = None


# --- schema helpers -------------------------------------------------------


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({_quote(table)})")}


def _auto_migrate(
    conn: sqlite3.Connection,
    table: str,
    columns: Sequence[tuple[str, str]],
    constraints: Sequence[str] = (),
    indexed: Sequence[str] = (),
) -> None:
    """Create ``table`` if missing, otherwise add any columns it lacks."""
    if not _table_exists(conn, table):
        parts = [f"{_quote(name)} {decl}" for name, decl in (*_MODEL_COLUMNS, *columns)]
        parts.extend(constraints)
        conn.execute(f"CREATE TABLE {_quote(table)} ({', '.join(parts)})")
    else:
        existing = _columns(conn, table)
        for name, decl in columns:
            if name not in existing:
                conn.execute(
                    f"ALTER TABLE {_quote(table)} ADD COLUMN {_quote(name)} {decl}"
                )
    for column in ("deleted_at", *indexed):
        index = f"idx_{table}_{column}"
        conn.execute(
            f"CREATE INDEX IF NOT EXISTS {_quote(index)} "
            f"ON {_quote(table)} ({_quote(column)})"
        )


def _drop_table(conn: sqlite3.Connection, table: str) -> None:
    conn.execute(f"DROP TABLE {_quote(table)}")


@contextmanager
def _step(description: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise MigrationError(f"{description}: {exc}") from exc


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[None]:
    if conn.in_transaction:
        conn.execute("COMMIT")
    conn.execute("BEGIN")
    try:
        yield
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


# --- table definitions ----------------------------------------------------

_SUBSCRIPTIONS = (
    ("reference_id", "TEXT UNIQUE NOT NULL"),
    ("job", "TEXT"),
    ("endpoint_name", "TEXT"),
)


def _migrate_subscriptions(conn: sqlite3.Connection) -> None:
    with _step("failed to auto migrate Subscription"):
        _auto_migrate(conn, "subscriptions", _SUBSCRIPTIONS)


def _migrate_child(
    conn: sqlite3.Connection,
    model: str,
    table: str,
    columns: Sequence[tuple[str, str]],
    indexed: Sequence[str] = (),
) -> None:
    with _step(f"failed to auto migrate {model}"):
        _auto_migrate(conn, table, columns, (_SUBSCRIPTION_FK,), indexed)


# --- migrations -----------------------------------------------------------


def _migrate_0(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    with _step("failed to auto migrate Endpoint"):
        _auto_migrate(
            conn,
            "endpoints",
            (
                ("url", "TEXT"),
                ("type", "TEXT"),
                ("refresh_int", "INTEGER"),
                ("name", "TEXT UNIQUE NOT NULL"),
            ),
        )
    _migrate_child(
        conn,
        "EthSubscription",
        "eth_subscriptions",
        (("subscription_id", "INTEGER"), ("addresses", "TEXT"), ("topics", "TEXT")),
    )


def _migrate_1576509489(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "TezosSubscription",
        "tezos_subscriptions",
        (
            ("subscription_id", "INTEGER UNIQUE NOT NULL"),
            ("addresses", "TEXT NOT NULL"),
        ),
    )


def _rollback_1576509489(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "tezos_subscriptions")


def _migrate_1576783801(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "SubstrateSubscription",
        "substrate_subscriptions",
        (
            ("subscription_id", "INTEGER UNIQUE NOT NULL"),
            ("account_ids", "TEXT NOT NULL"),
        ),
    )


def _rollback_1576783801(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "substrate_subscriptions")


def _migrate_1582671289(conn: sqlite3.Connection) -> None:
    with _step("failed to add unique index to subscription job id"):
        conn.execute("CREATE UNIQUE INDEX idx_job_id ON subscriptions (job)")


def _rollback_1582671289(conn: sqlite3.Connection) -> None:
    conn.execute("DROP INDEX idx_job_id")


def _migrate_1587897988(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "OntSubscription",
        "ont_subscriptions",
        (
            ("subscription_id", "INTEGER UNIQUE NOT NULL"),
            ("addresses", "TEXT NOT NULL"),
        ),
    )


def _rollback_1587897988(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "ont_subscriptions")


def _migrate_1592829052(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "BinanceSmartChainSubscription",
        "binance_smart_chain_subscriptions",
        (("subscription_id", "INTEGER"), ("addresses", "TEXT")),
    )


def _rollback_1592829052(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "bsc_subscriptions")


def _migrate_1594317706(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "NEARSubscription",
        "near_subscriptions",
        (("subscription_id", "INTEGER"), ("account_ids", "TEXT")),
    )


def _rollback_1594317706(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "near_subscriptions")


def _migrate_1599849837(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "CfxSubscription",
        "cfx_subscriptions",
        (("subscription_id", "INTEGER"), ("addresses", "TEXT"), ("topics", "TEXT")),
    )


def _rollback_1599849837(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "cfx_subscriptions")


_ETH_CALL_COLUMNS = (
    ("subscription_id", "INTEGER"),
    ("address", "TEXT"),
    ("abi", "TEXT"),
    ("response_key", "TEXT"),
    ("method_name", "TEXT"),
)


def _migrate_1603803454(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "EthCallSubscription",
        "eth_call_subscriptions",
        _ETH_CALL_COLUMNS,
        indexed=("subscription_id",),
    )


def _rollback_1603803454(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "eth_qae_subscriptions")


def _migrate_1605288480(conn: sqlite3.Connection) -> None:
    _migrate_child(
        conn,
        "EthCallSubscription",
        "eth_call_subscriptions",
        (*_ETH_CALL_COLUMNS, ("function_selector", "BLOB"), ("return_type", "TEXT")),
        indexed=("subscription_id",),
    )


def _rollback_1605288480(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "eth_call_subscriptions")


def _migrate_1608026935(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "KeeperSubscription",
        "keeper_subscriptions",
        (("subscription_id", "INTEGER"), ("address", "TEXT"), ("upkeep_id", "INTEGER")),
    )


def _rollback_1608026935(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "keeper_subscriptions")


def _migrate_1610281978(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "BSNIritaSubscription",
        "bsn_irita_subscriptions",
        (
            ("subscription_id", "INTEGER"),
            ("addresses", "TEXT"),
            ("service_name", "TEXT"),
        ),
    )


def _rollback_1610281978(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "bsn_irita_subscriptions")


def _migrate_1611169747(conn: sqlite3.Connection) -> None:
    conn.execute(
        "ALTER TABLE keeper_subscriptions ADD COLUMN \"from\" BLOB NOT NULL DEFAULT x''"
    )


def _rollback_1611169747(conn: sqlite3.Connection) -> None:
    if "from" in _columns(conn, "keeper_subscriptions"):
        conn.execute('ALTER TABLE keeper_subscriptions DROP COLUMN "from"')


def _migrate_1613356332(conn: sqlite3.Connection) -> None:
    _migrate_subscriptions(conn)
    _migrate_child(
        conn,
        "AgoricSubscription",
        "agoric_subscriptions",
        (("subscription_id", "INTEGER"),),
    )


def _rollback_1613356332(conn: sqlite3.Connection) -> None:
    _drop_table(conn, "agoric_subscriptions")


MIGRATIONS: tuple[Migration, ...] = (
    Migration("0", _migrate_0),
    Migration("1576509489", _migrate_1576509489, _rollback_1576509489),
    Migration("1576783801", _migrate_1576783801, _rollback_1576783801),
    Migration("1582671289", _migrate_1582671289, _rollback_1582671289),
    Migration("1587897988", _migrate_1587897988, _rollback_1587897988),
    Migration("1592829052", _migrate_1592829052, _rollback_1592829052),
    Migration("1594317706", _migrate_1594317706, _rollback_1594317706),
    Migration("1599849837", _migrate_1599849837, _rollback_1599849837),
    Migration("1603803454", _migrate_1603803454, _rollback_1603803454),
    Migration("1605288480", _migrate_1605288480, _rollback_1605288480),
    Migration("1608026935", _migrate_1608026935, _rollback_1608026935),
    Migration("1610281978", _migrate_1610281978, _rollback_1610281978),
    Migration("1611169747", _migrate_1611169747, _rollback_1611169747),
    Migration("1613356332", _migrate_1613356332, _rollback_1613356332),
)


# --- public API -----------------------------------------------------------


def _check_ids(migrations: Sequence[Migration]) -> None:
    seen: set[str] = set()
    for migration in migrations:
        if not migration.id:
            raise MigrationError("missing ID in migration")
        if migration.id in seen:
            raise MigrationError(f'duplicated migration ID: "{migration.id}"')
        seen.add(migration.id)


def applied_migrations(connection: sqlite3.Connection) -> list[str]:
    """Return the IDs of the migrations already applied, in the order applied."""
    if not _table_exists(connection, MIGRATIONS_TABLE):
        return []
    rows = connection.execute(
        f"SELECT id FROM {_quote(MIGRATIONS_TABLE)} ORDER BY rowid"
    ).fetchall()
    return [row[0] for row in rows]


def migrate(connection: sqlite3.Connection) -> list[str]:
    """Apply every migration not yet applied, all in one transaction.

    Returns the IDs applied by this call. Raises MigrationError on failure,
    leaving the database as it was.
    """
    _check_ids(MIGRATIONS)
    newly_applied: list[str] = []
    try:
        with _transaction(connection):
            connection.execute(
                f"CREATE TABLE IF NOT EXISTS {_quote(MIGRATIONS_TABLE)} "
                "(id VARCHAR(255) PRIMARY KEY)"
            )
            done = set(applied_migrations(connection))
            for migration in MIGRATIONS:
                if migration.id in done:
                    continue
                migration.migrate(connection)
                connection.execute(
                    f"INSERT INTO {_quote(MIGRATIONS_TABLE)} (id) VALUES (?)",
                    (migration.id,),
                )
                newly_applied.append(migration.id)
    except (MigrationError, sqlite3.Error) as exc:
        raise MigrationError(f"error running migrations: {exc}") from exc
    return newly_applied


def rollback_last(connection: sqlite3.Connection) -> str:
    """Undo the most recent applied migration and return its ID."""
    done = set(applied_migrations(connection))
    last = next((m for m in reversed(MIGRATIONS) if m.id in done), None)
    if last is None:
        raise MigrationError("could not find last run migration")
    if last.rollback is None:
        raise MigrationError(f"it is impossible to rollback migration {last.id}")
    try:
        with _transaction(connection):
            last.rollback(connection)
            connection.execute(
                f"DELETE FROM {_quote(MIGRATIONS_TABLE)} WHERE id = ?", (last.id,)
            )
    except sqlite3.Error as exc:
        raise MigrationError(f"error rolling back migration {last.id}: {exc}") from exc
    return last.id