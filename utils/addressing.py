"""Asset id normalization helpers."""

from __future__ import annotations

import re

# Base58 is case-sensitive, so ids are trimmed but never case-folded.
_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def normalize_asset_id(value: str | None) -> str:
    """Normalize asset ids for internal maps/dedup."""
    return str(value or "").strip()


def is_valid_asset_id(value: str | None) -> bool:
    return bool(_BASE58_RE.match(normalize_asset_id(value)))


def short_id(value: str | None, size: int = 8) -> str:
    text = normalize_asset_id(value)
    return text[:size] if len(text) > size else text
