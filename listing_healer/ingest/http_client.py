"""Shared HTTP request helper with per-service policies and status-aware error handling."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.WriteTimeout,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)


@dataclass(frozen=True)
class ServicePolicy:
    """Per-service HTTP request policy configuration."""

    name: str
    max_attempts: int = 1
    timeout: httpx.Timeout = None  # Will be set to default if None
    backoff_base_seconds: float = 1.0

    def __post_init__(self):
        """Set default timeout if not provided."""
        if self.timeout is None:
            object.__setattr__(
                self,
                'timeout',
                httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=10.0)
            )


class BlockedError(RuntimeError):
    """Raised when the service refuses the request (401/403)."""
    pass


class PermanentURLError(RuntimeError):
    """Raised when the requested endpoint does not exist (404)."""
    pass


class TransientFetchError(RuntimeError):
    """Raised when a request fails after retries (5xx, timeouts, etc.)."""
    pass


class RateLimitedError(RuntimeError):
    """Raised when rate limited (429)."""

    def __init__(self, retry_after: Optional[int] = None):
        super().__init__("Rate limited")
        self.retry_after = retry_after


def _backoff(policy: ServicePolicy, attempt: int) -> float:
    return policy.backoff_base_seconds * (2 ** (attempt - 1)) + random.random()


async def request_with_policy(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    policy: ServicePolicy,
    params: Optional[dict[str, Any]] = None,
    json: Any = None,
    headers: Optional[dict[str, str]] = None,
) -> httpx.Response:
    """
    Send a request with a per-service policy and status-aware error handling.

    Args:
        client: httpx AsyncClient instance
        method: HTTP method
        url: URL to call
        policy: ServicePolicy configuration
        params: Optional query parameters
        json: Optional JSON body
        headers: Optional headers

    Returns:
        httpx.Response on 2xx

    Raises:
        BlockedError: On 401/403
        PermanentURLError: On 404
        RateLimitedError: If still rate limited on the last attempt
        TransientFetchError: If the request fails after all attempts
    """
    last_exc: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            resp = await client.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=policy.timeout,
            )

            sc = resp.status_code

            if 200 <= sc < 300:
                return resp

            if sc == 404:
                raise PermanentURLError(f"{policy.name}: 404 for {url}")

            if sc in (401, 403):
                raise BlockedError(f"{policy.name}: {sc} for {url}")

            if sc == 429:
                retry_after = resp.headers.get("Retry-After")
                retry_seconds = None
                if retry_after:
                    try:
                        retry_seconds = int(retry_after)
                    except (ValueError, TypeError):
                        pass
                raise RateLimitedError(retry_after=retry_seconds)

            # 5xx and anything unexpected are transient
            raise TransientFetchError(f"{policy.name}: status {sc} for {url}")

        except RateLimitedError as e:
            if attempt < policy.max_attempts:
                sleep_s = float(e.retry_after) if e.retry_after is not None else _backoff(policy, attempt)
                logger.warning(
                    f"{policy.name}: Rate limited (429), retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                last_exc = e
                continue
            raise

        except RETRYABLE_EXC as e:
            if attempt < policy.max_attempts:
                sleep_s = _backoff(policy, attempt)
                logger.warning(
                    f"{policy.name}: Transport error ({type(e).__name__}), "
                    f"retrying in {sleep_s:.1f}s (attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                last_exc = e
                continue
            raise TransientFetchError(
                f"{policy.name}: transport error ({type(e).__name__}) after "
                f"{policy.max_attempts} attempt(s): {url}"
            ) from e

        except (BlockedError, PermanentURLError):
            raise

        except TransientFetchError as e:
            if attempt < policy.max_attempts:
                sleep_s = _backoff(policy, attempt)
                logger.warning(
                    f"{policy.name}: {e}, retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                last_exc = e
                continue
            raise

    raise TransientFetchError(
        f"{policy.name}: failed after {policy.max_attempts} attempts: {url}"
    ) from last_exc


def timeout_for(seconds: float) -> httpx.Timeout:
    """Bounded timeout with a short connect phase."""
    return httpx.Timeout(seconds, connect=min(10.0, seconds))
