"""DuckDB persistence utilities for market snapshots and listings."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Sequence

import duckdb

from pipelines.common import utcnow
from pipelines.model import MarketSnapshot, Property, PropertyFilters, Provenance, SyncStatus

DB_ENV_VAR = "MARKET_DB_PATH"
DEFAULT_DB_PATH = Path("data/market.duckdb")

MARKET_SNAPSHOTS_TABLE = "market_snapshots"
PROPERTIES_TABLE = "properties"
SYNC_STATUS_TABLE = "sync_status"

SNAPSHOT_COLUMNS = (
    "city",
    "state",
    "zip_code",
    "month",
    "year",
    "median_price",
    "average_price_per_sqft",
    "days_on_market",
    "active_listings",
    "inventory_months",
    "sale_to_list_ratio",
    "price_reductions",
    "market_type",
    "provenance",
    "created_at",
)

PROPERTY_COLUMNS = (
    "identity_key",
    "external_id",
    "address",
    "city",
    "state",
    "zip_code",
    "price",
    "beds",
    "baths",
    "sqft",
    "property_type",
    "status",
    "source",
    "updated_at",
)


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def get_database_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Resolve the DuckDB file path from an explicit override or environment variable."""

    if override is not None:
        return Path(override)
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def connect(
    path: str | os.PathLike[str] | None = None,
    *,
    read_only: bool = False,
    ensure: bool = True,
) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection, optionally ensuring schema availability."""

    db_path = get_database_path(path)
    if not read_only:
        _ensure_parent_dir(db_path)
    conn = duckdb.connect(str(db_path), read_only=read_only)
    if ensure and not read_only:
        ensure_tables(conn)
    return conn


def ensure_tables(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the snapshot, listing and job status tables if they do not already exist.

    One snapshot row per (city, state, zip_code, month, year); a missing zip is
    stored as the empty string so it participates in the key.
    """

    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {MARKET_SNAPSHOTS_TABLE} (
            city TEXT NOT NULL,
            state TEXT NOT NULL,
            zip_code TEXT NOT NULL,
            month INTEGER NOT NULL,
            year INTEGER NOT NULL,
            median_price DOUBLE NOT NULL,
            average_price_per_sqft DOUBLE,
            days_on_market INTEGER,
            active_listings INTEGER,
            inventory_months DOUBLE,
            sale_to_list_ratio DOUBLE,
            price_reductions INTEGER,
            market_type TEXT NOT NULL,
            provenance TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL,
            PRIMARY KEY (city, state, zip_code, month, year)
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {PROPERTIES_TABLE} (
            identity_key TEXT PRIMARY KEY,
            external_id TEXT,
            address TEXT NOT NULL,
            city TEXT NOT NULL,
            state TEXT NOT NULL,
            zip_code TEXT NOT NULL,
            price DOUBLE,
            beds INTEGER,
            baths DOUBLE,
            sqft DOUBLE,
            property_type TEXT,
            status TEXT,
            source TEXT,
            updated_at TIMESTAMP NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {SYNC_STATUS_TABLE} (
            status_key TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            records INTEGER NOT NULL,
            message TEXT,
            synced_at TIMESTAMP NOT NULL
        )
        """
    )


def serialize_snapshot(snapshot: MarketSnapshot) -> tuple:
    data = snapshot.model_dump()
    data["provenance"] = snapshot.provenance.value
    return tuple(data[column] for column in SNAPSHOT_COLUMNS)


def _snapshot_from_row(row: Sequence[Any]) -> MarketSnapshot:
    return MarketSnapshot(**dict(zip(SNAPSHOT_COLUMNS, row, strict=True)))


def fetch_market_snapshots(
    conn: duckdb.DuckDBPyConnection,
    *,
    city: str,
    state: str,
    zip_code: str | None = None,
    limit: int | None = None,
) -> list[MarketSnapshot]:
    """Stored snapshots for a location, newest period first.

    Without ``zip_code`` every zip within the city is returned.
    """

    sql = f"SELECT {', '.join(SNAPSHOT_COLUMNS)} FROM {MARKET_SNAPSHOTS_TABLE} WHERE city = ? AND state = ?"
    params: list[Any] = [city, state]
    if zip_code:
        sql += " AND zip_code = ?"
        params.append(zip_code)
    sql += " ORDER BY year DESC, month DESC, created_at DESC"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    return [_snapshot_from_row(row) for row in conn.execute(sql, params).fetchall()]


def latest_market_snapshot(
    conn: duckdb.DuckDBPyConnection, *, city: str, state: str, zip_code: str = ""
) -> MarketSnapshot | None:
    """Most recent stored row for exactly this (city, state, zip) key."""

    row = conn.execute(
        f"""
        SELECT {', '.join(SNAPSHOT_COLUMNS)} FROM {MARKET_SNAPSHOTS_TABLE}
        WHERE city = ? AND state = ? AND zip_code = ?
        ORDER BY year DESC, month DESC, created_at DESC
        LIMIT 1
        """,
        [city, state, zip_code],
    ).fetchone()
    return _snapshot_from_row(row) if row else None


def count_market_snapshots(
    conn: duckdb.DuckDBPyConnection, key: tuple[str, str, str, int, int]
) -> int:
    row = conn.execute(
        f"""
        SELECT COUNT(*) FROM {MARKET_SNAPSHOTS_TABLE}
        WHERE city = ? AND state = ? AND zip_code = ? AND month = ? AND year = ?
        """,
        list(key),
    ).fetchone()
    return int(row[0])


def _serialize_property(prop: Property) -> tuple:
    return (
        prop.identity_key,
        prop.external_id,
        prop.address,
        prop.city,
        prop.state,
        prop.zip_code,
        prop.price,
        prop.beds,
        prop.baths,
        prop.sqft,
        prop.property_type,
        prop.status,
        prop.source,
        utcnow(),
    )


def upsert_properties(conn: duckdb.DuckDBPyConnection, properties: Iterable[Property]) -> int:
    """Insert or replace listings keyed on their canonical identity.

    Returns
    -------
    int
        Number of records written to the database.
    """

    serialized = list({row[0]: row for row in map(_serialize_property, properties)}.values())
    if not serialized:
        return 0

    placeholders = ", ".join("?" for _ in PROPERTY_COLUMNS)
    conn.executemany(
        f"""
        INSERT OR REPLACE INTO {PROPERTIES_TABLE} ({', '.join(PROPERTY_COLUMNS)})
        VALUES ({placeholders})
        """,
        serialized,
    )
    return len(serialized)


def build_property_filters(filters: PropertyFilters) -> tuple[str | None, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []

    if filters.location:
        term = f"%{filters.location.lower()}%"
        clauses.append("(lower(city) LIKE ? OR lower(state) LIKE ? OR zip_code LIKE ?)")
        params.extend([term, term, term])
    if filters.city:
        clauses.append("lower(city) = lower(?)")
        params.append(filters.city)
    if filters.state:
        clauses.append("lower(state) = lower(?)")
        params.append(filters.state)
    if filters.zip_code:
        clauses.append("zip_code = ?")
        params.append(filters.zip_code)
    if filters.property_type:
        clauses.append("property_type = ?")
        params.append(filters.property_type)
    if filters.status:
        clauses.append("status = ?")
        params.append(filters.status)

    ranges = (
        ("price", ">=", filters.min_price),
        ("price", "<=", filters.max_price),
        ("beds", ">=", filters.min_beds),
        ("baths", ">=", filters.min_baths),
        ("sqft", ">=", filters.min_sqft),
        ("sqft", "<=", filters.max_sqft),
    )
    for column, op, value in ranges:
        if value is not None:
            clauses.append(f"{column} {op} ?")
            params.append(value)

    if not clauses:
        return None, params
    return " AND ".join(clauses), params


def fetch_properties(
    conn: duckdb.DuckDBPyConnection, filters: PropertyFilters | None = None
) -> list[Property]:
    """Query stored listings. Rows read back carry ``existing`` provenance."""

    filters = filters or PropertyFilters()
    where, params = build_property_filters(filters)
    sql = f"SELECT {', '.join(PROPERTY_COLUMNS)} FROM {PROPERTIES_TABLE}"
    if where:
        sql += f" WHERE {where}"
    sql += f" ORDER BY updated_at DESC, identity_key LIMIT {int(filters.limit)}"

    results: list[Property] = []
    for row in conn.execute(sql, params).fetchall():
        data = dict(zip(PROPERTY_COLUMNS, row, strict=True))
        data.pop("identity_key")
        data.pop("updated_at")
        results.append(Property(**data, provenance=Provenance.EXISTING))
    return results


def count_properties(conn: duckdb.DuckDBPyConnection, *, source: str | None = None) -> int:
    sql = f"SELECT COUNT(*) FROM {PROPERTIES_TABLE}"
    params: list[Any] = []
    if source:
        sql += " WHERE source = ?"
        params.append(source)
    return int(conn.execute(sql, params).fetchone()[0])


def record_sync_status(
    conn: duckdb.DuckDBPyConnection,
    status_key: str,
    *,
    status: str,
    records: int = 0,
    message: str | None = None,
    synced_at: datetime | None = None,
) -> SyncStatus:
    """Store the latest run of ``status_key``, replacing the previous one."""

    entry = SyncStatus(
        status_key=status_key,
        status=status,
        records=records,
        message=message,
        synced_at=synced_at or utcnow(),
    )
    conn.execute(
        f"""
        INSERT OR REPLACE INTO {SYNC_STATUS_TABLE} (status_key, status, records, message, synced_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        [entry.status_key, entry.status, entry.records, entry.message, entry.synced_at],
    )
    return entry


def fetch_sync_status(conn: duckdb.DuckDBPyConnection, status_key: str) -> SyncStatus | None:
    row = conn.execute(
        f"""
        SELECT status_key, status, records, message, synced_at FROM {SYNC_STATUS_TABLE}
        WHERE status_key = ?
        """,
        [status_key],
    ).fetchone()
    if row is None:
        return None
    return SyncStatus(
        status_key=row[0], status=row[1], records=row[2], message=row[3], synced_at=row[4]
    )


__all__ = [
    "MARKET_SNAPSHOTS_TABLE",
    "PROPERTIES_TABLE",
    "SYNC_STATUS_TABLE",
    "connect",
    "count_market_snapshots",
    "count_properties",
    "ensure_tables",
    "fetch_market_snapshots",
    "fetch_properties",
    "fetch_sync_status",
    "get_database_path",
    "latest_market_snapshot",
    "record_sync_status",
    "serialize_snapshot",
    "upsert_properties",
]
