from datetime import datetime

import duckdb
import httpx
import pytest

from storage.db import connect

PROVIDER_ENV_KEYS = (
    "ATTOM_API_KEY",
    "ATTOM_BASE_URL",
    "MLS_API_KEY",
    "MLS_BASE_URL",
    "SYNC_TARGETS",
    "SYNC_MAX_CONCURRENCY",
    "PROVIDER_TIMEOUT_SECONDS",
    "MARKET_DATA_MAX_AGE_HOURS",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for key in PROVIDER_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    db_path = tmp_path / "market.duckdb"
    monkeypatch.setenv("MARKET_DB_PATH", str(db_path))
    return db_path


@pytest.fixture()
def db_conn(isolated_env):
    conn = connect(isolated_env)
    yield conn
    conn.close()


@pytest.fixture()
def now():
    return datetime(2025, 3, 15, 12, 0, 0)


@pytest.fixture()
def mock_client():
    """Build an ``httpx.AsyncClient`` whose requests are answered by ``handler``."""

    def factory(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture()
def areastats_payload():
    return {
        "status": {"code": 0, "msg": "SuccessWithResult"},
        "area": [
            {
                "marketstat": [
                    {"MedianSalePrice": "525,000"},
                    {"MedianPricePerSqft": 212.5},
                    {"AverageDaysOnMarket": 21},
                    {"ActiveListingCount": 88},
                    {"MonthsOfInventory": 2.1},
                    {"SaleToListRatio": 0.99},
                    {"PriceReductionCount": 7},
                ]
            }
        ],
    }


@pytest.fixture()
def sale_snapshot_payload():
    def record(amount, sqft, days, sold=True):
        sale = {"amount": {"saleamt": amount}, "marketingTime": days}
        if sold:
            sale["saleTransDate"] = "2025-02-01"
        return {"sale": sale, "building": {"size": {"universalsize": sqft}}}

    return {
        "status": {"code": 0, "msg": "SuccessWithResult"},
        "property": [
            record(300000, 1500, 20),
            record(400000, 2000, 30),
            record(500000, 2500, 40, sold=False),
        ],
    }


@pytest.fixture()
def no_result_payload():
    return {"status": {"code": 0, "msg": "SuccessWithoutResult"}, "property": []}


class FlakyConnection:
    """DuckDB connection proxy whose INSERT statements fail.

    With ``match`` set, only inserts whose parameters contain that value fail.
    """

    def __init__(self, conn, exc_type=duckdb.IOException, failures=None, match=None):
        self._conn = conn
        self._exc_type = exc_type
        self._failures = failures
        self._match = match
        self.insert_calls = 0

    def execute(self, sql, *args, **kwargs):
        if sql.lstrip().upper().startswith("INSERT") and self._matches(args):
            self.insert_calls += 1
            if self._failures is None or self.insert_calls <= self._failures:
                raise self._exc_type("disk I/O error")
        return self._conn.execute(sql, *args, **kwargs)

    def _matches(self, args):
        if self._match is None:
            return True
        params = args[0] if args else ()
        return self._match in params

    def __getattr__(self, name):
        return getattr(self._conn, name)


@pytest.fixture()
def flaky_conn(db_conn):
    return FlakyConnection(db_conn)


@pytest.fixture()
def flaky_factory(db_conn):
    def factory(**kwargs):
        return FlakyConnection(db_conn, **kwargs)

    return factory
