"""Per-bakeform operation locks.

Mapping and mounting an image are blocking OS operations that must never run
twice at once for the same image. Independent images are not serialized
against each other.

Usage:
    from pi_bakery.storage.bakeform_lock import bakeform_operation

    with bakeform_operation("raspios-lite"):
        # map, mount, unmount or delete
        ...
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from pi_bakery.logging import LoggerFactory


log = LoggerFactory.for_mount()

# Guards the lock registry itself
_registry_lock = threading.Lock()

_locks: dict[str, threading.RLock] = {}
_active: dict[str, int] = {}


def _lock_for(name: str) -> threading.RLock:
    with _registry_lock:
        lock = _locks.get(name)
        if lock is None:
            lock = threading.RLock()
            _locks[name] = lock
        return lock


@contextmanager
def bakeform_operation(name: str) -> Generator[None, None, None]:
    """Hold the operation lock for ``name``.

    Reentrant for the owning thread, so ``delete`` may call ``unmount``.
    """
    lock = _lock_for(name)
    with lock:
        with _registry_lock:
            _active[name] = _active.get(name, 0) + 1
        log.trace(f"Bakeform operation started on {name}")
        try:
            yield
        finally:
            with _registry_lock:
                _active[name] -= 1
                if _active[name] == 0:
                    del _active[name]
            log.trace(f"Bakeform operation completed on {name}")


def is_operation_active(name: str | None = None) -> bool:
    """Check if an operation is in progress on ``name`` (or on any bakeform)."""
    with _registry_lock:
        if name is None:
            return bool(_active)
        return name in _active
