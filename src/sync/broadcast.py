"""Fan-out of engine state to registered observers."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

STATE_EVENT = "engine:state"
TRANSPORT_EVENT = "engine:transport"
METER_EVENT = "engine:meter"

Observer = Callable[[str, Dict[str, Any]], None]


class Broadcaster:
    """Deliver ``(event, payload)`` pairs to every subscribed observer.

    A failing observer is logged and skipped; it never prevents delivery to
    the others or interrupts the engine.
    """

    def __init__(self) -> None:
        self._observers: List[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer`` and return a callable that unsubscribes it."""

        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        for observer in list(self._observers):
            try:
                observer(event, payload)
            except Exception:
                logger.exception("Observer failed while handling %s", event)


__all__ = ["Broadcaster", "METER_EVENT", "Observer", "STATE_EVENT", "TRANSPORT_EVENT"]
