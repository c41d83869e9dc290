from __future__ import annotations

import os
from datetime import datetime, timedelta
from textwrap import dedent

from airflow import DAG
from airflow.providers.docker.operators.docker import DockerOperator
from docker.types import Mount

DEFAULT_ARGS = {
    "owner": "data-platform",
    "depends_on_past": False,
    "email_on_failure": False,
    "email_on_retry": False,
    "retries": 1,
    "retry_delay": timedelta(minutes=10),
}

COMPOSE_PROJECT = os.environ.get("COMPOSE_PROJECT_NAME", "market-sync")
DOCKER_NETWORK = f"{COMPOSE_PROJECT}_default"
API_IMAGE = os.environ.get("API_IMAGE", "market-sync-api:latest")
DATA_MOUNT = Mount(target="/app/data", source="market_sync_data", type="volume")

ENV_KEYS = [
    "ATTOM_API_KEY",
    "ATTOM_BASE_URL",
    "MLS_API_KEY",
    "MLS_BASE_URL",
    "MARKET_DB_PATH",
    "PROVIDER_TIMEOUT_SECONDS",
    "SYNC_MAX_CONCURRENCY",
    "SYNC_TARGETS",
]

ENVIRONMENT = {key: value for key in ENV_KEYS if (value := os.environ.get(key))}

QUALITY_CHECK_SCRIPT = dedent(
    """
from storage.db import connect

conn = connect(read_only=True)
counts = dict(
    conn.execute(
        "SELECT provenance, COUNT(*) FROM market_snapshots GROUP BY provenance"
    ).fetchall()
)
invalid = conn.execute(
    "SELECT COUNT(*) FROM market_snapshots WHERE median_price <= 0 OR month NOT BETWEEN 1 AND 12"
).fetchone()[0]
conn.close()

assert sum(counts.values()) > 0, "No snapshots stored"
assert invalid == 0, "Snapshots with invalid median price or period"
print(counts)
    """
).strip()

RECORD_STATUS_SCRIPT = dedent(
    """
from storage.db import connect, record_sync_status

conn = connect()
records = conn.execute("SELECT COUNT(*) FROM market_snapshots").fetchone()[0]
record_sync_status(conn, "sync_market_daily", status="success", records=records)
conn.close()
    """
).strip()

with DAG(
    dag_id="sync_market_daily",
    description="Run the market data and MLS listing syncs and record status",
    schedule="0 6 * * *",
    start_date=datetime(2024, 1, 1),
    catchup=False,
    default_args=DEFAULT_ARGS,
    max_active_runs=1,
    tags=["market-data", "sync"],
) as dag:

    sync_market_data = DockerOperator(
        task_id="sync_market_data",
        image=API_IMAGE,
        command=["python", "-m", "jobs", "sync"],
        docker_url="unix://var/run/docker.sock",
        auto_remove=True,
        network_mode=DOCKER_NETWORK,
        environment=ENVIRONMENT,
        mounts=[DATA_MOUNT],
        mount_tmp_dir=False,
        do_xcom_push=False,
    )

    sync_mls_listings = DockerOperator(
        task_id="sync_mls_listings",
        image=API_IMAGE,
        command=["python", "-m", "jobs", "sync-listings"],
        docker_url="unix://var/run/docker.sock",
        auto_remove=True,
        network_mode=DOCKER_NETWORK,
        environment=ENVIRONMENT,
        mounts=[DATA_MOUNT],
        mount_tmp_dir=False,
        do_xcom_push=False,
    )

    data_quality_checks = DockerOperator(
        task_id="data_quality_checks",
        image=API_IMAGE,
        command=["python", "-c", QUALITY_CHECK_SCRIPT],
        docker_url="unix://var/run/docker.sock",
        auto_remove=True,
        network_mode=DOCKER_NETWORK,
        environment=ENVIRONMENT,
        mounts=[DATA_MOUNT],
        mount_tmp_dir=False,
        do_xcom_push=False,
    )

    record_status = DockerOperator(
        task_id="record_last_success",
        image=API_IMAGE,
        command=["python", "-c", RECORD_STATUS_SCRIPT],
        docker_url="unix://var/run/docker.sock",
        auto_remove=True,
        network_mode=DOCKER_NETWORK,
        environment=ENVIRONMENT,
        mounts=[DATA_MOUNT],
        mount_tmp_dir=False,
        do_xcom_push=False,
    )

    sync_market_data >> data_quality_checks >> record_status
    sync_market_data >> sync_mls_listings
