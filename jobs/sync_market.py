"""Batch job that refreshes market snapshots for every configured location."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Iterable, Sequence

import duckdb
import httpx
from dotenv import load_dotenv

from jobs.config import ProviderSettings, TargetConfig, iter_targets, TARGET_LOCATIONS
from pipelines.common import client_scope, utcnow
from pipelines.errors import ConfigurationError, ProviderUnavailable
from pipelines.fallback import fallback_snapshot
from pipelines.model import MarketSnapshot, Provenance, SyncResult, SyncSummary, SyncTarget
from pipelines.sources import attom
from storage.db import connect, fetch_market_snapshots
from storage.reconciler import reconcile

load_dotenv()

logger = logging.getLogger(__name__)

Outcomes = tuple[list[SyncResult], list[SyncTarget]]


async def _fetch_snapshot(
    target: SyncTarget,
    *,
    settings: ProviderSettings,
    client: httpx.AsyncClient | None,
    now: datetime,
) -> tuple[MarketSnapshot, str | None, str | None]:
    """Return (snapshot, answering variant, fetch error)."""

    try:
        outcome = await attom.fetch_market_statistics(
            target,
            api_key=settings.attom_api_key,
            base_url=settings.attom_base_url,
            client=client,
            timeout=settings.timeout_seconds,
        )
        snapshot = attom.parse_market_statistics(outcome.payload, target, now=now)
    except (ConfigurationError, ProviderUnavailable, ValueError) as exc:
        logger.warning("Market statistics unavailable for %s: %s", target.label, exc)
        return fallback_snapshot(target, now=now), None, str(exc)
    return snapshot, outcome.variant, None


async def sync_target(
    target: SyncTarget,
    *,
    conn: duckdb.DuckDBPyConnection,
    settings: ProviderSettings,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> SyncResult:
    """Fetch (or synthesize) the current-period snapshot for one target and store it."""

    now = now or utcnow()
    snapshot, variant, fetch_error = await _fetch_snapshot(
        target, settings=settings, client=client, now=now
    )
    persisted = reconcile(conn, snapshot)
    error = "; ".join(message for message in (fetch_error, persisted.error) if message)
    return SyncResult(
        target=target,
        success=persisted.provenance is Provenance.API,
        source=persisted.provenance,
        error=error or None,
        snapshot=persisted.snapshot,
        variant=variant,
    )


async def _guarded_sync(target: SyncTarget, **kwargs) -> SyncResult:
    """The one place where a target's failure is kept from aborting the batch."""

    try:
        return await sync_target(target, **kwargs)
    except Exception as exc:
        logger.exception("Error syncing market data for %s.", target.label)
        return SyncResult(target=target, success=False, source=Provenance.EXCEPTION, error=str(exc))


async def _run_sequential(targets: Sequence[SyncTarget], **kwargs) -> Outcomes:
    outcomes: list[SyncResult] = []
    try:
        for target in targets:
            logger.info("Syncing market data for %s...", target.label)
            outcomes.append(await _guarded_sync(target, **kwargs))
    except asyncio.CancelledError:
        logger.warning(
            "Market sync cancelled after %s of %s targets.", len(outcomes), len(targets)
        )
    return outcomes, list(targets[len(outcomes):])


async def _run_bounded(targets: Sequence[SyncTarget], limit: int, **kwargs) -> Outcomes:
    semaphore = asyncio.Semaphore(limit)

    async def run(target: SyncTarget) -> SyncResult:
        async with semaphore:
            logger.info("Syncing market data for %s...", target.label)
            return await _guarded_sync(target, **kwargs)

    tasks = [asyncio.create_task(run(target)) for target in targets]
    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.warning("Market sync cancelled; returning completed targets only.")

    outcomes: list[SyncResult] = []
    pending: list[SyncTarget] = []
    for target, task in zip(targets, tasks, strict=True):
        if task.done() and not task.cancelled():
            outcomes.append(task.result())
        else:
            pending.append(target)
    return outcomes, pending


async def sync_all(
    targets: Iterable[SyncTarget],
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
    settings: ProviderSettings | None = None,
    client: httpx.AsyncClient | None = None,
    concurrency: int | None = None,
    now: datetime | None = None,
) -> SyncSummary:
    """Refresh every target and summarize the outcome.

    Targets run one at a time unless ``concurrency`` (or
    ``SYNC_MAX_CONCURRENCY``) allows more in-flight provider requests. Each
    target yields exactly one result. Cancelling the run returns the results
    collected so far with ``cancelled`` set and the rest listed as ``pending``.
    """

    targets = list(targets)
    settings = settings or ProviderSettings.from_env()
    limit = max(1, concurrency or settings.max_concurrency)
    owns_conn = conn is None
    conn = conn if conn is not None else connect()
    try:
        async with client_scope(client, timeout=settings.timeout_seconds) as http:
            kwargs = {"conn": conn, "settings": settings, "client": http, "now": now}
            if limit == 1:
                outcomes, pending = await _run_sequential(targets, **kwargs)
            else:
                outcomes, pending = await _run_bounded(targets, limit, **kwargs)
    finally:
        if owns_conn:
            conn.close()

    summary = SyncSummary.from_results(outcomes, pending=pending, cancelled=bool(pending))
    logger.info(
        "Market data sync completed: %s/%s locations updated from the provider (%s).",
        summary.total_success,
        summary.total_attempted,
        ", ".join(f"{name}={count}" for name, count in sorted(summary.provenance_counts.items()))
        or "nothing attempted",
    )
    return summary


async def update_market_data(
    target: SyncTarget,
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
    settings: ProviderSettings | None = None,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> SyncResult:
    """Refresh a single location; same path as one element of ``sync_all``."""

    summary = await sync_all([target], conn=conn, settings=settings, client=client, now=now)
    outcomes = [*summary.results, *summary.errors]
    return outcomes[0]


async def get_market_data(
    city: str,
    state: str,
    zip_code: str | None = None,
    *,
    conn: duckdb.DuckDBPyConnection,
    settings: ProviderSettings,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> list[MarketSnapshot]:
    """Stored snapshots for a location, refreshed first when none is recent."""

    now = now or utcnow()
    local = fetch_market_snapshots(conn, city=city, state=state, zip_code=zip_code)
    max_age = timedelta(hours=settings.market_data_max_age_hours)
    exact_zip = zip_code or ""
    if any(
        snapshot.zip_code == exact_zip and now - snapshot.created_at <= max_age
        for snapshot in local
    ):
        logger.debug("Using recent market data from the local store for %s, %s.", city, state)
        return local
    if not settings.attom_api_key:
        logger.info("Property-data API not configured; serving stored market data only.")
        return local

    target = SyncTarget(city=city, state=state, zip_code=zip_code)
    result = await _guarded_sync(target, conn=conn, settings=settings, client=client, now=now)
    if result.snapshot is None:
        return local
    return fetch_market_snapshots(conn, city=city, state=state, zip_code=zip_code)


def _resolve_targets() -> tuple[TargetConfig, ...]:
    requested = os.getenv("SYNC_TARGETS")
    if requested:
        keys = [key.strip() for key in requested.split(",") if key.strip()]
        selected = tuple(iter_targets(keys))
        if selected:
            return selected
        logger.warning(
            "SYNC_TARGETS=%s did not match any configured targets; falling back to defaults.",
            requested,
        )
    return TARGET_LOCATIONS


def main(targets: Iterable[TargetConfig] | None = None, *, concurrency: int | None = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    configs = tuple(targets) if targets is not None else _resolve_targets()
    settings = ProviderSettings.from_env()
    if not settings.attom_api_key:
        logger.warning("ATTOM_API_KEY is not set; every target will use fallback data.")
    summary = asyncio.run(
        sync_all(
            [config.to_target() for config in configs],
            settings=settings,
            concurrency=concurrency,
        )
    )
    logger.info(
        "Sync job finished (completion rate=%.0f%%, fallbacks=%s).",
        summary.completion_rate * 100,
        summary.provenance_counts.get(Provenance.FALLBACK.value, 0),
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["get_market_data", "main", "sync_all", "sync_target", "update_market_data"]
