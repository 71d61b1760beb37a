from __future__ import annotations

import logging
from typing import Callable, Iterable, List

from .models import ViewEntry, ViewList

logger = logging.getLogger(__name__)

Subscriber = Callable[[ViewList], None]


class DisplayState:
    """Observable list of view entries.

    Writes replace the whole value, so a subscriber never sees a
    half-merged list.
    """

    def __init__(self) -> None:
        self._value: ViewList = ()
        self._subscribers: List[Subscriber] = []

    @property
    def value(self) -> ViewList:
        return self._value

    def publish(self, entries: Iterable[ViewEntry]) -> None:
        self._value = tuple(entries)
        for callback in list(self._subscribers):
            try:
                callback(self._value)
            except Exception:
                logger.exception("Display subscriber %r failed", callback)

    def clear(self) -> None:
        self.publish(())

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe
