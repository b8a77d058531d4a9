"""Shared aiohttp client with per-source call spacing and retry/backoff."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import aiohttp

from utils.errors import ErrorKind, kind_for_http_status

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""
    kind: ErrorKind | None = None


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    limiter_waits: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0

    def observe_latency(self, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_total_ms += elapsed_ms
        self.latency_count += 1
        self.latency_max_ms = max(self.latency_max_ms, elapsed_ms)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    jitter_seconds: float = 0.25
    rate_limit_delay_seconds: float = 2.0


def _source_key(source: str) -> str:
    return str(source or "default").strip().lower() or "default"


class SourceRateLimiter:
    """Enforces a minimum spacing between consecutive calls to the same source.

    A caller arriving earlier than the spacing allows waits out the remainder.
    """

    def __init__(
        self,
        min_intervals: dict[str, float] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._min_intervals = {_source_key(k): max(0.0, float(v)) for k, v in (min_intervals or {}).items()}
        self._clock = clock
        self._sleep = sleep
        self._last_call: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def min_interval(self, source: str) -> float:
        return self._min_intervals.get(_source_key(source), 0.0)

    async def acquire(self, source: str) -> float:
        """Wait for the source's slot; returns the seconds spent waiting."""
        key = _source_key(source)
        spacing = self._min_intervals.get(key, 0.0)
        if spacing <= 0:
            return 0.0
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            waited = 0.0
            last = self._last_call.get(key)
            if last is not None:
                wait_for = spacing - (self._clock() - last)
                if wait_for > 0:
                    logger.debug("HTTP_RATE_WAIT source=%s wait=%.3fs spacing=%.3fs", key, wait_for, spacing)
                    await self._sleep(wait_for)
                    waited = wait_for
            self._last_call[key] = self._clock()
            return waited


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        *,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
        min_intervals: dict[str, float] | None = None,
        retry: RetryPolicy | None = None,
        connector_limit: int = 30,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = {_source_key(k): max(1, int(v)) for k, v in (source_limits or {}).items()}
        self._retry = retry or RetryPolicy()
        self._connector_limit = max(1, int(connector_limit))
        self._limiter = SourceRateLimiter(min_intervals)
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self._connector_limit)
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    def _get_semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            sem = asyncio.Semaphore(self._source_limits.get(key, 8))
            self._semaphores[key] = sem
        return sem

    def _stats_row(self, key: str) -> HttpSourceStats:
        row = self._stats.get(key)
        if row is None:
            row = HttpSourceStats()
            self._stats[key] = row
        return row

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for source, row in self._stats.items():
            total = int(row.ok + row.fail)
            err_pct = (float(row.fail) / total * 100.0) if total > 0 else 0.0
            out[source] = {
                "ok": int(row.ok),
                "fail": int(row.fail),
                "total": total,
                "rate_limited": int(row.rate_limited),
                "limiter_waits": int(row.limiter_waits),
                "retries": int(row.retries),
                "error_percent": round(err_pct, 2),
                "latency_avg_ms": round((row.latency_total_ms / row.latency_count), 2) if row.latency_count > 0 else 0.0,
                "latency_max_ms": round(float(row.latency_max_ms), 2),
            }
        if reset:
            self._stats = {}
        return out

    def _compute_delay(self, attempt: int, status: int) -> float:
        policy = self._retry
        base = max(0.05, float(policy.backoff_base_seconds))
        cap = max(base, float(policy.backoff_max_seconds))
        exp = min(cap, base * (2 ** max(0, attempt - 1)))
        if status == 429:
            exp = min(cap, exp + max(0.0, float(policy.rate_limit_delay_seconds)))
        return max(0.01, exp + random.uniform(0.0, max(0.0, float(policy.jitter_seconds))))

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request("GET", url, source=source, params=params, headers=headers, max_attempts=max_attempts)

    async def post_json(
        self,
        url: str,
        payload: Any,
        *,
        source: str = "default",
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request(
            "POST", url, source=source, json_body=payload, headers=headers, max_attempts=max_attempts
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        source: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or self._retry.attempts))
        req_headers = dict(self._headers)
        if headers:
            req_headers.update(headers)

        key = _source_key(source)
        sem = self._get_semaphore(key)
        stats = self._stats_row(key)
        for attempt in range(1, attempts + 1):
            status = 0
            if await self._limiter.acquire(key) > 0:
                stats.limiter_waits += 1
            async with sem:
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.request(
                        method, url, params=params, json=json_body, headers=req_headers
                    ) as response:
                        stats.observe_latency(started)
                        status = int(response.status or 0)
                        if status == 200:
                            payload = await response.json(content_type=None)
                            stats.ok += 1
                            return HttpResult(ok=True, status=status, data=payload)

                        kind = kind_for_http_status(status)
                        if kind is ErrorKind.RATE_LIMITED:
                            stats.rate_limited += 1
                        if kind is ErrorKind.FATAL or attempt >= attempts:
                            stats.fail += 1
                            return HttpResult(
                                ok=False, status=status, data=None, error=f"http_status_{status}", kind=kind
                            )
                except ValueError as exc:
                    # Body was not JSON: the source answered, but not with anything usable.
                    stats.observe_latency(started)
                    stats.fail += 1
                    return HttpResult(
                        ok=False, status=status, data=None, error=f"malformed_json:{exc}", kind=ErrorKind.FATAL
                    )
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    stats.observe_latency(started)
                    if attempt >= attempts:
                        stats.fail += 1
                        return HttpResult(
                            ok=False,
                            status=status,
                            data=None,
                            error=f"http_error:{exc.__class__.__name__}:{exc}",
                            kind=ErrorKind.UNAVAILABLE,
                        )

            stats.retries += 1
            delay = self._compute_delay(attempt=attempt, status=status)
            logger.debug(
                "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                key,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted", kind=ErrorKind.UNAVAILABLE)
