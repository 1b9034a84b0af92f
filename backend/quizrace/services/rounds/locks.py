"""Keyed mutual exclusion for round and game critical sections.

``RoundLocks.hold(key)`` serialises callers within one process. The
capacity controller pairs it with ``SELECT ... FOR UPDATE`` on the same row,
so the guarantee extends across processes on databases that implement row
locks. On SQLite the FOR UPDATE clause is dropped and the in-process lock is
what serialises writers.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class _Entry:
    __slots__ = ('lock', 'holders')

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class RoundLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def round(self, round_id: int):
        return self.hold(('round', round_id))

    def game(self, game_id: int):
        return self.hold(('game', game_id))

    def __len__(self):
        with self._guard:
            return len(self._entries)
