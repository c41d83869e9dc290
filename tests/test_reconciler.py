from datetime import datetime, timedelta

import duckdb
import pytest

from pipelines.errors import PersistenceError
from pipelines.fallback import fallback_snapshot
from pipelines.model import MarketSnapshot, Property, PropertyFilters, Provenance, SyncTarget
from storage.db import (
    SYNC_STATUS_TABLE,
    count_market_snapshots,
    count_properties,
    fetch_market_snapshots,
    fetch_properties,
    fetch_sync_status,
    latest_market_snapshot,
    record_sync_status,
    upsert_properties,
)
from storage.reconciler import reconcile, write_snapshot

CANTON = SyncTarget(city="Canton", state="GA", zip_code="30115")


def _api_snapshot(median, *, month=3, created_at=None):
    return MarketSnapshot(
        city="Canton",
        state="GA",
        zip_code="30115",
        month=month,
        year=2025,
        median_price=median,
        days_on_market=18,
        inventory_months=2.4,
        provenance=Provenance.API,
        created_at=created_at or datetime(2025, month, 10),
    )


def test_reconcile_replaces_current_period(db_conn):
    first = reconcile(db_conn, _api_snapshot(400000))
    second = reconcile(db_conn, _api_snapshot(420000))

    assert first.success and second.success
    assert second.provenance is Provenance.API
    assert count_market_snapshots(db_conn, ("Canton", "GA", "30115", 3, 2025)) == 1
    stored = latest_market_snapshot(db_conn, city="Canton", state="GA", zip_code="30115")
    assert stored.median_price == pytest.approx(420000.0)
    assert stored.days_on_market == 18


def test_reconcile_keeps_other_periods(db_conn):
    reconcile(db_conn, _api_snapshot(400000, month=2))
    reconcile(db_conn, _api_snapshot(410000, month=3))

    rows = fetch_market_snapshots(db_conn, city="Canton", state="GA", zip_code="30115")
    assert [(row.month, row.median_price) for row in rows] == [(3, 410000.0), (2, 400000.0)]


def test_reconcile_round_trips_fallback_rows(db_conn):
    reconcile(db_conn, fallback_snapshot(SyncTarget(city="Atlanta", state="GA"), now=datetime(2025, 3, 1)))

    stored = latest_market_snapshot(db_conn, city="Atlanta", state="GA")
    assert stored.provenance is Provenance.FALLBACK
    assert stored.zip_code == ""


def test_failed_write_returns_existing_row(db_conn, flaky_conn):
    prior = _api_snapshot(395000, month=2)
    reconcile(db_conn, prior)

    outcome = reconcile(flaky_conn, _api_snapshot(430000))

    assert outcome.success is True
    assert outcome.provenance is Provenance.EXISTING
    assert outcome.snapshot.median_price == pytest.approx(395000.0)
    assert outcome.snapshot.month == 2
    assert "disk I/O error" in outcome.error


def test_failed_write_without_prior_row_is_exception(flaky_conn):
    outcome = reconcile(flaky_conn, _api_snapshot(430000))

    assert outcome.success is False
    assert outcome.provenance is Provenance.EXCEPTION


def test_failed_fallback_write_without_prior_row(flaky_conn):
    outcome = reconcile(flaky_conn, fallback_snapshot(CANTON))

    assert outcome.success is False
    assert outcome.provenance is Provenance.FALLBACK_ERROR


def test_write_snapshot_raises_persistence_error(flaky_conn):
    with pytest.raises(PersistenceError) as excinfo:
        write_snapshot(flaky_conn, _api_snapshot(430000))

    assert isinstance(excinfo.value.original, duckdb.IOException)


def test_write_retries_transaction_conflicts(db_conn, flaky_factory):
    conn = flaky_factory(exc_type=duckdb.TransactionException, failures=1)

    outcome = reconcile(conn, _api_snapshot(430000))

    assert outcome.provenance is Provenance.API
    assert conn.insert_calls == 2
    assert count_market_snapshots(db_conn, ("Canton", "GA", "30115", 3, 2025)) == 1


def test_upsert_properties_dedupes_on_identity(db_conn):
    listings = [
        Property(external_id="AV1", address="1 Main St", city="Canton", state="GA", zip_code="30115", price=300000),
        Property(external_id="AV1", address="1 Main St", city="Canton", state="GA", zip_code="30115", price=310000),
        Property(address="2 Oak Ln", city="Canton", state="GA", zip_code="30115", price=250000, beds=3),
    ]

    assert upsert_properties(db_conn, listings) == 2
    assert upsert_properties(db_conn, listings[:1]) == 1

    stored = fetch_properties(db_conn, PropertyFilters(city="canton"))
    assert len(stored) == 2
    assert all(prop.provenance is Provenance.EXISTING for prop in stored)
    assert {prop.price for prop in stored} == {300000.0, 250000.0}


def test_fetch_properties_applies_filters(db_conn):
    upsert_properties(
        db_conn,
        [
            Property(address="1 A St", city="Canton", state="GA", zip_code="30115", price=200000, beds=2),
            Property(address="2 B St", city="Canton", state="GA", zip_code="30115", price=350000, beds=4),
            Property(address="3 C St", city="Woodstock", state="GA", zip_code="30188", price=500000, beds=5),
        ],
    )

    assert [p.address for p in fetch_properties(db_conn, PropertyFilters(min_price=300000, max_price=400000))] == ["2 B St"]
    assert len(fetch_properties(db_conn, PropertyFilters(location="301"))) == 3
    assert len(fetch_properties(db_conn, PropertyFilters(zip_code="30188", min_beds=5))) == 1
    assert len(fetch_properties(db_conn, PropertyFilters(limit=1))) == 1


def test_latest_snapshot_prefers_newest_period(db_conn):
    reconcile(db_conn, _api_snapshot(400000, month=1))
    reconcile(db_conn, _api_snapshot(405000, month=3, created_at=datetime(2025, 3, 1) - timedelta(days=1)))

    assert latest_market_snapshot(db_conn, city="Canton", state="GA", zip_code="30115").month == 3


def test_sync_status_table_is_part_of_the_schema(db_conn):
    tables = {row[0] for row in db_conn.execute("SHOW TABLES").fetchall()}

    assert SYNC_STATUS_TABLE in tables
    assert fetch_sync_status(db_conn, "sync_market_daily") is None


def test_record_sync_status_replaces_previous_run(db_conn):
    record_sync_status(
        db_conn, "sync_market_daily", status="success", records=4, synced_at=datetime(2025, 3, 1, 6)
    )
    record_sync_status(
        db_conn,
        "sync_market_daily",
        status="error",
        message="disk full",
        synced_at=datetime(2025, 3, 2, 6),
    )

    status = fetch_sync_status(db_conn, "sync_market_daily")
    assert (status.status, status.records, status.message) == ("error", 0, "disk full")
    assert status.synced_at == datetime(2025, 3, 2, 6)
    assert db_conn.execute(f"SELECT COUNT(*) FROM {SYNC_STATUS_TABLE}").fetchone()[0] == 1


def test_count_properties_by_source(db_conn):
    upsert_properties(
        db_conn,
        [
            Property(external_id="M1", address="1 Main St", city="Canton", state="GA", source="mls"),
            Property(external_id="M2", address="2 Main St", city="Canton", state="GA", source="mls"),
            Property(external_id="A1", address="3 Main St", city="Canton", state="GA", source="attom"),
        ],
    )

    assert count_properties(db_conn) == 3
    assert count_properties(db_conn, source="mls") == 2
