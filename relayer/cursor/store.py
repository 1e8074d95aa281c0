"""Durable per-event-name watermark.

A cursor only moves inside the same atomic unit as the writes derived from
the events up to its new position, so a crash can never leave a cursor ahead
of its effect (or an effect applied twice).
"""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from relayer.core.clock import Clock, SystemClock
from relayer.core.models import EventCursor
from relayer.store.base import Session, SetCursor, Store, Write


logger = logging.getLogger(__name__)

Effect = Callable[[Session], Sequence[Write]]


def no_effect(session: Session) -> Sequence[Write]:
    return ()


class CursorStore:
    def __init__(self, store: Store, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    def read(self, event_name: str) -> int:
        with self._store.atomic() as session:
            cursor = session.cursor(event_name)
        return cursor.last_processed_vid if cursor else 0

    def snapshot(self) -> list[EventCursor]:
        with self._store.atomic() as session:
            return session.cursors()

    def advance(self, event_name: str, new_vid: int, effect: Effect = no_effect) -> bool:
        """Apply `effect` and move the cursor to `new_vid` as one unit.

        Returns False, without calling `effect`, when `new_vid` is not past
        the stored position (duplicate delivery). If `effect` raises, nothing
        is written and the exception propagates.
        """

        with self._store.atomic() as session:
            cursor = session.cursor(event_name, for_update=True)
            current = cursor.last_processed_vid if cursor else 0
            if new_vid <= current:
                logger.debug("duplicate_delivery_ignored", extra={"event_name": event_name, "vid": new_vid, "cursor": current})
                return False
            writes = list(effect(session))
            writes.append(SetCursor(event_name=event_name, last_processed_vid=new_vid, at=self._clock.now()))
            session.apply(*writes)
        return True
