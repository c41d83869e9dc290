"""Shared utilities for calling external providers and normalizing their responses."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, MutableMapping

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

DEFAULT_TIMEOUT_SECONDS = 30.0
_DEFAULT_WAIT = wait_exponential(min=1, max=16)
_DEFAULT_STOP = stop_after_attempt(5)

_SENTINEL_STRINGS = {"", "N/A", "NA", "null", "Null", "-", "."}


Headers = Mapping[str, str] | None
Params = Mapping[str, Any] | None
Data = MutableMapping[str, Any] | bytes | str | None
JsonData = Any


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DuckDB ``TIMESTAMP`` columns."""
    return datetime.now(UTC).replace(tzinfo=None)


@asynccontextmanager
async def client_scope(
    client: httpx.AsyncClient | None = None,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield ``client`` untouched, or a short-lived client closed on exit."""

    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as owned:
        yield owned


async def send_once(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    headers: Headers = None,
    params: Params = None,
    method: str = "GET",
    json: JsonData = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> httpx.Response:
    """Issue exactly one request and return the raw response without raising on status."""

    async with client_scope(client, timeout=timeout) as http:
        return await http.request(
            method.upper(),
            url,
            headers=headers,
            params=params,
            json=json,
            timeout=timeout,
        )


@retry(
    wait=_DEFAULT_WAIT,
    stop=_DEFAULT_STOP,
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
async def fetch_json(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    headers: Headers = None,
    params: Params = None,
    method: str = "GET",
    data: Data = None,
    json: JsonData = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    """Execute an HTTP request and return the decoded JSON payload.

    Retries with exponential backoff when the transport fails (connection errors,
    timeouts). HTTP error statuses are raised immediately as ``HTTPStatusError`` so
    callers can decide whether the failure is fatal.
    """

    async with client_scope(client, timeout=timeout) as http:
        response = await http.request(
            method.upper(),
            url,
            headers=headers,
            params=params,
            data=data,
            json=json,
            timeout=timeout,
        )

    response.raise_for_status()
    return response.json()


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        stripped = value.replace(",", "").replace("$", "").strip()
        if stripped in _SENTINEL_STRINGS:
            return None
        try:
            numeric = float(stripped)
        except ValueError:
            return None
    else:
        return None

    if math.isnan(numeric) or math.isinf(numeric):
        return None
    return numeric


def coerce_int(value: Any) -> int | None:
    numeric = coerce_float(value)
    if numeric is None:
        return None
    return int(round(numeric))


__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "client_scope",
    "coerce_float",
    "coerce_int",
    "fetch_json",
    "send_once",
    "utcnow",
]
