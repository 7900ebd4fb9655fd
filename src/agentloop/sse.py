"""Server-Sent Events decoding for provider streams."""

from __future__ import annotations

import json
from collections.abc import AsyncIterable, AsyncIterator

from agentloop.errors import StreamParseError


async def iter_sse_json(
    lines: AsyncIterable[str],
) -> AsyncIterator[dict]:
    """Yield the JSON payload of every ``data:`` line.

    ``event:`` and comment lines are skipped, as is the ``[DONE]``
    sentinel.  A payload that is not valid JSON is fatal.
    """
    async for line in lines:
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise StreamParseError(payload, e) from e
        if not isinstance(data, dict):
            raise StreamParseError(payload)
        yield data
