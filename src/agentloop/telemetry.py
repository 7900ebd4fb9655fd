"""Per-session telemetry helpers.

Everything here is owned by a :class:`TelemetrySession` that the caller
creates and passes in; nothing is cached at module level.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BoundedCache(Generic[K, V]):
    """Fixed-capacity mapping that evicts the least recently used entry."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: OrderedDict[K, V] = OrderedDict()

    def __contains__(self, key: K) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: K, default: V | None = None) -> V | None:
        if key not in self._entries:
            return default
        self._entries.move_to_end(key)
        return self._entries[key]

    def put(self, key: K, value: V) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = value
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted {evicted!r} from telemetry cache")

    def get_or_create(self, key: K, factory: Callable[[], V]) -> V:
        if key in self._entries:
            self._entries.move_to_end(key)
            return self._entries[key]
        value = factory()
        self.put(key, value)
        return value

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class TelemetryEvent:
    name: str
    properties: dict[str, str] = field(default_factory=dict)
    measurements: dict[str, float] = field(default_factory=dict)


def _stable_hash(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()


class TelemetrySession:
    """Telemetry state for one conversation.

    Args:
        cache_capacity: Size of each id cache.
        exporter: Called with every event sent; events are also kept in
            :attr:`events`.
    """

    def __init__(
        self,
        cache_capacity: int = 1000,
        exporter: Callable[[TelemetryEvent], None] | None = None,
    ):
        self.message_ids: BoundedCache[str, str] = BoundedCache(cache_capacity)
        self.request_option_ids: BoundedCache[str, str] = BoundedCache(cache_capacity)
        self.exporter = exporter
        self.events: list[TelemetryEvent] = []

    def message_id(self, message: Any) -> str:
        """Stable id for a message with this content, within the session."""
        return self.message_ids.get_or_create(
            _stable_hash(message), lambda: str(uuid.uuid4())
        )

    def request_options_id(self, options: dict) -> str:
        return self.request_option_ids.get_or_create(
            _stable_hash(options), lambda: uuid.uuid4().hex[:8]
        )

    def send(
        self,
        name: str,
        properties: dict[str, str] | None = None,
        measurements: dict[str, float] | None = None,
    ) -> None:
        event = TelemetryEvent(name, properties or {}, measurements or {})
        logger.debug(f"Telemetry {name}: {event.properties} {event.measurements}")
        self.events.append(event)
        if self.exporter is not None:
            self.exporter(event)
