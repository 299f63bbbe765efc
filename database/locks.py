from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

# One lock per trade id while anyone holds or waits for it. Row locks in the
# database cover multi-process deployments on backends that support
# SELECT ... FOR UPDATE; sqlite does not, so these serialize in-process writers.
_registry_lock = threading.Lock()
# trade id -> [lock, holders and waiters]
_locks: dict[str, list] = {}


def _checkout(trade_id: str) -> threading.Lock:
    with _registry_lock:
        entry = _locks.get(trade_id)
        if entry is None:
            entry = [threading.Lock(), 0]
            _locks[trade_id] = entry
        entry[1] += 1
        return entry[0]


def _checkin(trade_id: str) -> None:
    with _registry_lock:
        entry = _locks[trade_id]
        entry[1] -= 1
        if entry[1] == 0:
            del _locks[trade_id]


@contextmanager
def trade_locks(*trade_ids) -> Iterator[None]:
    """Hold the exclusive locks of every given trade id.

    Ids are de-duplicated and taken in sorted order so two callers locking
    the same pair never deadlock.
    """
    ids = sorted({str(t) for t in trade_ids if t})
    checked_out = []
    held = []
    try:
        for tid in ids:
            lock = _checkout(tid)
            checked_out.append(tid)
            lock.acquire()
            held.append(lock)
        yield
    finally:
        for lock in reversed(held):
            lock.release()
        for tid in checked_out:
            _checkin(tid)
