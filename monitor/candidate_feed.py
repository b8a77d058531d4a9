"""Detection feed reader: JSON lines from a file (optionally followed) or stdin."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import AsyncIterator, TextIO

from trading.models import CandidateEvent

logger = logging.getLogger(__name__)


def parse_candidate_line(line: str) -> CandidateEvent | None:
    text = str(line or "").strip()
    if not text or text.startswith("#"):
        return None
    try:
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError("row is not an object")
        return CandidateEvent.from_payload(payload)
    except (TypeError, ValueError) as exc:
        logger.warning("FEED_BAD_ROW err=%s row=%s", exc, text[:120])
        return None


async def _readline(stream: TextIO) -> str:
    return await asyncio.get_running_loop().run_in_executor(None, stream.readline)


async def iter_stream(stream: TextIO) -> AsyncIterator[CandidateEvent]:
    """Yield events until the stream closes."""
    while True:
        line = await _readline(stream)
        if not line:
            logger.info("FEED_EOF")
            return
        event = parse_candidate_line(line)
        if event is not None:
            yield event


async def iter_file(path: str, *, follow: bool = False, poll_seconds: float = 0.5) -> AsyncIterator[CandidateEvent]:
    """Yield events from a JSONL file; with `follow` keep tailing new lines."""
    with open(path, "r", encoding="utf-8-sig") as handle:
        pending = ""
        while True:
            chunk = handle.readline()
            if not chunk:
                if not follow:
                    if pending:
                        event = parse_candidate_line(pending)
                        if event is not None:
                            yield event
                    return
                await asyncio.sleep(poll_seconds)
                continue
            pending += chunk
            if not pending.endswith("\n"):
                # Partial write; wait for the rest of the line.
                continue
            line, pending = pending, ""
            event = parse_candidate_line(line)
            if event is not None:
                yield event


def open_feed(source: str, *, follow: bool = False) -> AsyncIterator[CandidateEvent]:
    if source in ("", "-"):
        return iter_stream(sys.stdin)
    return iter_file(source, follow=follow)
