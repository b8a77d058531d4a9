"""Typed failure kinds shared by the RPC adapter, risk sources and retry logic."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    FATAL = "fatal"


class RpcError(RuntimeError):
    """Raised by the ledger RPC adapter. Retry decisions branch on `kind` only."""

    def __init__(self, kind: ErrorKind, detail: str, endpoint: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail
        self.endpoint = endpoint

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMITED


class SourceError(RuntimeError):
    """Raised by an external risk source client when it cannot produce data."""

    def __init__(self, kind: ErrorKind, detail: str, source: str = "") -> None:
        super().__init__(f"{source or 'source'} {kind.value}: {detail}")
        self.kind = kind
        self.detail = detail
        self.source = source


def kind_for_http_status(status: int) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 0 or status == 408 or 500 <= status <= 599:
        return ErrorKind.UNAVAILABLE
    return ErrorKind.FATAL
