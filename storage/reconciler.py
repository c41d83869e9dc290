"""Record reconciliation: replace the current-period snapshot for a location.

The write is a single ``INSERT OR REPLACE`` keyed on
(city, state, zip_code, month, year), so a period is replaced atomically and
fields from different fetches are never mixed. ``reconcile`` never raises: a
failed write is reported through the returned ``PersistResult``.
"""

from __future__ import annotations

import logging

import duckdb
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pipelines.errors import PersistenceError
from pipelines.model import MarketSnapshot, PersistResult, Provenance
from storage.db import (
    MARKET_SNAPSHOTS_TABLE,
    SNAPSHOT_COLUMNS,
    latest_market_snapshot,
    serialize_snapshot,
)

logger = logging.getLogger(__name__)

_UPSERT_SQL = f"""
INSERT OR REPLACE INTO {MARKET_SNAPSHOTS_TABLE} ({', '.join(SNAPSHOT_COLUMNS)})
VALUES ({', '.join('?' for _ in SNAPSHOT_COLUMNS)})
"""


@retry(
    retry=retry_if_exception_type(duckdb.TransactionException),
    wait=wait_exponential(multiplier=0.1, max=2),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _upsert_snapshot(conn: duckdb.DuckDBPyConnection, snapshot: MarketSnapshot) -> None:
    conn.execute(_UPSERT_SQL, list(serialize_snapshot(snapshot)))


def write_snapshot(conn: duckdb.DuckDBPyConnection, snapshot: MarketSnapshot) -> None:
    """Upsert ``snapshot``; raises ``PersistenceError`` when the store rejects it."""

    try:
        _upsert_snapshot(conn, snapshot)
    except duckdb.Error as exc:
        raise PersistenceError(f"Failed to store market snapshot: {exc}", original=exc) from exc


def _failure_provenance(snapshot: MarketSnapshot) -> Provenance:
    if snapshot.provenance is Provenance.FALLBACK:
        return Provenance.FALLBACK_ERROR
    return Provenance.EXCEPTION


def _recover(
    conn: duckdb.DuckDBPyConnection, snapshot: MarketSnapshot, error: PersistenceError
) -> PersistResult:
    city, state, zip_code, _, _ = snapshot.key()
    try:
        existing = latest_market_snapshot(conn, city=city, state=state, zip_code=zip_code)
    except duckdb.Error as exc:
        logger.error("Could not read prior market data for %s, %s %s: %s", city, state, zip_code, exc)
        existing = None

    if existing is not None:
        logger.info(
            "Using existing market data for %s, %s (%s-%02d) after failed write.",
            city,
            state,
            existing.year,
            existing.month,
        )
        return PersistResult(
            success=True, provenance=Provenance.EXISTING, snapshot=existing, error=str(error)
        )

    return PersistResult(
        success=False,
        provenance=_failure_provenance(snapshot),
        snapshot=snapshot,
        error=str(error),
    )


def reconcile(conn: duckdb.DuckDBPyConnection, snapshot: MarketSnapshot) -> PersistResult:
    """Store ``snapshot`` as the live row for its location and period.

    On a failed write the most recent prior row for the same location is
    returned tagged ``existing``; without one the failure is reported as
    ``exception`` (``fallback_error`` for a fallback snapshot).
    """

    try:
        write_snapshot(conn, snapshot)
    except PersistenceError as exc:
        logger.error("%s", exc)
        return _recover(conn, snapshot, exc)

    logger.debug("Stored %s market snapshot for %s.", snapshot.provenance.value, snapshot.key())
    return PersistResult(success=True, provenance=snapshot.provenance, snapshot=snapshot)


__all__ = ["reconcile", "write_snapshot"]
