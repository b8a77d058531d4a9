"""Round-robin pool of ledger read endpoints with rotation past rate limits."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence, TypeVar

from utils.errors import RpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Endpoint:
    url: str
    index: int
    last_used_at: float = 0.0


class RateLimitedEndpointPool:
    """Spreads reads across endpoints; index 0 is the pinned primary.

    Only `next_endpoint()` moves the rotation cursor. The primary reference is
    fixed at construction and is used for anything that must read its own writes
    (balances, submitted transactions).
    """

    def __init__(self, urls: Sequence[str], *, clock: Callable[[], float] = time.monotonic) -> None:
        cleaned = [str(u).strip() for u in urls if str(u or "").strip()]
        if not cleaned:
            raise ValueError("endpoint pool needs at least one endpoint url")
        self._endpoints = tuple(Endpoint(url=url, index=i) for i, url in enumerate(cleaned))
        self._primary = self._endpoints[0]
        self._cursor = 0
        self._clock = clock
        logger.info("RPC_POOL endpoints=%s primary=%s", len(self._endpoints), self._primary.url)

    def __len__(self) -> int:
        return len(self._endpoints)

    @property
    def endpoints(self) -> tuple[Endpoint, ...]:
        return self._endpoints

    def next_endpoint(self) -> Endpoint:
        endpoint = self._endpoints[self._cursor]
        self._cursor = (self._cursor + 1) % len(self._endpoints)
        endpoint.last_used_at = self._clock()
        return endpoint

    def primary_endpoint(self) -> Endpoint:
        self._primary.last_used_at = self._clock()
        return self._primary

    async def with_retry(self, operation: Callable[[Endpoint], Awaitable[T]], max_attempts: int = 3) -> T:
        """Run `operation` on rotating endpoints, moving on immediately after a rate limit.

        Any other failure propagates on the spot. When every attempt is rate
        limited the last error is raised.
        """
        attempts = max(1, int(max_attempts))
        last_error: RpcError | None = None
        for attempt in range(1, attempts + 1):
            endpoint = self.next_endpoint()
            try:
                return await operation(endpoint)
            except RpcError as exc:
                if not exc.is_rate_limited:
                    raise
                last_error = exc
                logger.warning(
                    "RPC_RATE_LIMITED endpoint=%s attempt=%s/%s rotating",
                    endpoint.url,
                    attempt,
                    attempts,
                )
        assert last_error is not None
        raise last_error
