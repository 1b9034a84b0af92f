"""Append-only log of engine events.

Components append events after their transaction commits; subscribers (the
Socket.IO notifier, tests) are called synchronously in append order.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


ROUND_CREATED = 'round.created'
ROUND_FULL = 'round.full'
ROUND_REOPENED = 'round.reopened'
ROUND_COMPLETED = 'round.completed'
ROUND_CANCELLED = 'round.cancelled'
REFUND_REQUESTED = 'payment.refund_requested'
PARTICIPANT_COMPLETED = 'participant.completed'
PARTICIPANT_FAILED = 'participant.failed'
PARTICIPANT_FLAGGED = 'participant.flagged'


@dataclass(frozen=True)
class Event:
    name: str
    payload: Dict
    sequence: int
    at: float = field(default_factory=time.time)


class EventLog:
    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[Event] = []
        self._subscribers: List[Callable[[Event], None]] = []

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        self._subscribers.append(callback)

    def append(self, name: str, **payload) -> Event:
        with self._lock:
            event = Event(name=name, payload=payload, sequence=len(self._events) + 1)
            self._events.append(event)
        for callback in list(self._subscribers):
            callback(event)
        return event

    def publish(self, pending: List[tuple]) -> None:
        """Append events collected while a transaction was open."""
        for name, payload in pending:
            self.append(name, **payload)

    def events(self, name: Optional[str] = None) -> List[Event]:
        with self._lock:
            if name is None:
                return list(self._events)
            return [e for e in self._events if e.name == name]

    def __len__(self):
        return len(self._events)
