"""Per-record change subscriptions.

Storage publishes every successful write here. Callbacks run
synchronously inside ``publish`` so, for a single record, delivery
order matches write order; nothing is promised across records.
"""

from __future__ import annotations

import itertools
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

ChangeCallback = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class ChangeFeed:
    """Fan record changes out to subscribers keyed by record id."""

    __slots__ = ("_counter", "_subscribers")

    def __init__(self) -> None:
        self._subscribers: dict[str, dict[int, ChangeCallback]] = defaultdict(dict)
        self._counter = itertools.count()

    def subscribe(self, record_id: str, on_change: ChangeCallback) -> Unsubscribe:
        token = next(self._counter)
        self._subscribers[record_id][token] = on_change

        def unsubscribe() -> None:
            subs = self._subscribers.get(record_id)
            if subs is None:
                return
            subs.pop(token, None)
            if not subs:
                self._subscribers.pop(record_id, None)

        return unsubscribe

    def publish(self, record_id: str, record: Any) -> None:
        for token, callback in list(self._subscribers.get(record_id, {}).items()):
            try:
                callback(record)
            except Exception:
                logger.warning(
                    "events.subscriber_failed",
                    record_id=record_id,
                    subscriber=token,
                    exc_info=True,
                )

    def subscriber_count(self, record_id: str) -> int:
        return len(self._subscribers.get(record_id, {}))
