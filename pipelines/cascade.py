"""Table-driven endpoint fallback for provider operations.

Providers move resources between API versions and accept different lookup keys
(postal code vs. city/state). A logical operation is therefore described as an
ordered table of ``EndpointVariant`` rows. ``run_cascade`` tries each row once, in
order, and returns the first usable payload. Only exhausting the table raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import httpx

from pipelines.common import DEFAULT_TIMEOUT_SECONDS, client_scope, send_once
from pipelines.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

ParamBuilder = Callable[[Mapping[str, Any]], "dict[str, Any] | None"]
PayloadCheck = Callable[[Any], "str | None"]

_MAX_ERROR_BODY = 300


@dataclass(frozen=True)
class EndpointVariant:
    """One request shape for a logical operation.

    ``build_params`` returns ``None`` when the variant does not apply to the
    context (e.g. a postal-code lookup without a zip); such rows are skipped.
    """

    name: str
    path: str
    build_params: ParamBuilder
    method: str = "GET"


@dataclass(frozen=True)
class VariantAttempt:
    variant: str
    ok: bool
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class CascadeResult:
    variant: str
    payload: Any
    attempts: tuple[VariantAttempt, ...]


def _accept_any(_: Any) -> str | None:
    return None


async def _attempt(
    client: httpx.AsyncClient,
    variant: EndpointVariant,
    url: str,
    params: Mapping[str, Any],
    headers: Mapping[str, str],
    check: PayloadCheck,
    timeout: float,
) -> tuple[Any, VariantAttempt]:
    try:
        response = await send_once(
            url,
            client=client,
            headers=headers,
            params=params,
            method=variant.method,
            timeout=timeout,
        )
    except httpx.HTTPError as exc:
        message = f"{type(exc).__name__}: {exc} [{variant.path}]"
        return None, VariantAttempt(variant.name, False, error=message)

    if not response.is_success:
        body = response.text[:_MAX_ERROR_BODY]
        message = f"{response.status_code} - {body} [{variant.path}]"
        return None, VariantAttempt(variant.name, False, response.status_code, message)

    try:
        payload = response.json()
    except ValueError:
        message = f"{response.status_code} - response is not valid JSON [{variant.path}]"
        return None, VariantAttempt(variant.name, False, response.status_code, message)

    rejection = check(payload)
    if rejection:
        message = f"{rejection} [{variant.path}]"
        return None, VariantAttempt(variant.name, False, response.status_code, message)

    return payload, VariantAttempt(variant.name, True, response.status_code)


async def run_cascade(
    variants: Sequence[EndpointVariant],
    context: Mapping[str, Any],
    *,
    base_url: str,
    headers: Mapping[str, str],
    check: PayloadCheck = _accept_any,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    operation: str = "provider request",
) -> CascadeResult:
    """Try ``variants`` in order and return the first accepted payload.

    Raises ``ProviderUnavailable`` carrying the last recorded error when every
    applicable variant failed.
    """

    attempts: list[VariantAttempt] = []
    last_error = f"No endpoint variant applies to {operation}"

    async with client_scope(client, timeout=timeout) as http:
        for variant in variants:
            params = variant.build_params(context)
            if params is None:
                continue
            url = f"{base_url.rstrip('/')}{variant.path}"
            logger.debug("Trying %s via %s with params %s", operation, variant.name, params)
            payload, attempt = await _attempt(
                http, variant, url, params, headers, check, timeout
            )
            attempts.append(attempt)
            if attempt.ok:
                logger.info("%s answered by variant %s.", operation, variant.name)
                return CascadeResult(variant=variant.name, payload=payload, attempts=tuple(attempts))
            last_error = attempt.error or last_error
            logger.warning("%s variant %s failed: %s", operation, variant.name, attempt.error)

    logger.warning("All %s endpoint variants failed for %s.", len(attempts), operation)
    raise ProviderUnavailable(last_error, attempts=attempts)


__all__ = [
    "CascadeResult",
    "EndpointVariant",
    "VariantAttempt",
    "run_cascade",
]
