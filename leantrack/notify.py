"""Explicit subscription for progress and metric change events.

Writers are handed a notifier and publish to it; consumers that keep their own
derived view (a progress summary, a pivot signal panel) subscribe and
recompute when told.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

PROGRESS_CHANGED = "progress_changed"
METRIC_CHANGED = "metric_changed"


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    project_id: str
    payload: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[ChangeEvent], None]


class ProgressNotifier:
    """Fan-out of change events to registered listeners.

    A failing listener is logged and skipped so the remaining listeners still
    see the event.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                log.warning("Listener %r failed for %s: %s", listener, event.kind, exc)

    def __len__(self) -> int:
        return len(self._listeners)
