"""
Per-key FIFO exclusion.

A KeyLockRegistry hands out one exclusion slot per key, created on first use
and discarded as soon as nobody holds or waits for it, so the map only ever
contains keys with activity in flight. Waiters on the same key are served in
arrival order. Distinct keys never contend with each other beyond the brief
registry bookkeeping.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, Optional

from guildsync.errors import LockTimeoutError


class _KeySlot:
    """Exclusion slot for one key. All fields are guarded by the registry lock."""

    def __init__(self):
        self.held = False
        self.waiters: Deque[object] = deque()
        self.users = 0


class KeyLockRegistry:
    """Lazily created, garbage-collected, FIFO per-key locks."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._ready = threading.Condition(self._mutex)
        self._slots: Dict[str, _KeySlot] = {}

    def __len__(self) -> int:
        with self._mutex:
            return len(self._slots)

    def is_locked(self, key: str) -> bool:
        with self._mutex:
            slot = self._slots.get(key)
            return bool(slot and slot.held)

    def waiting(self, key: str) -> int:
        with self._mutex:
            slot = self._slots.get(key)
            return len(slot.waiters) if slot else 0

    def acquire(self, key: str, timeout: Optional[float] = None) -> None:
        """
        Block until the caller owns the key's slot.

        On timeout the caller's place in line is given up and LockTimeoutError
        is raised; nothing has been touched on its behalf.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        ticket = object()

        with self._ready:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _KeySlot()
            slot.users += 1
            slot.waiters.append(ticket)

            while slot.held or slot.waiters[0] is not ticket:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    slot.waiters.remove(ticket)
                    self._release_user(key, slot)
                    self._ready.notify_all()
                    raise LockTimeoutError(key, timeout)
                self._ready.wait(remaining)

            slot.waiters.popleft()
            slot.held = True

    def release(self, key: str) -> None:
        with self._ready:
            slot = self._slots.get(key)
            if slot is None or not slot.held:
                raise RuntimeError(f"Release of unheld key lock {key}")
            slot.held = False
            self._release_user(key, slot)
            self._ready.notify_all()

    def _release_user(self, key: str, slot: _KeySlot) -> None:
        slot.users -= 1
        if slot.users == 0 and not slot.held:
            del self._slots[key]

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        self.acquire(key, timeout)
        try:
            yield
        finally:
            self.release(key)
