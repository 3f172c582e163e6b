"""
Per-session lock registry.

Every operation that mutates a session or opens its wallet runs inside
`SessionLocks.hold(session_id)`. Entries are reference counted and dropped
once nobody holds or waits on them.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from .errors import CapabilityFailure

log = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.RLock()
        self.refs = 0


class SessionLocks:
    """Keyed re-entrant locks with bounded waits."""

    def __init__(self, wait_timeout: Optional[float] = None):
        self.wait_timeout = wait_timeout
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None):
        """
        Hold the lock for `key`.

        Waiters queue on the same lock and run their own operation once it is
        free. A waiter that gives up raises a retryable CapabilityFailure.
        """
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1

        wait = timeout if timeout is not None else self.wait_timeout
        acquired = entry.lock.acquire(timeout=wait if wait is not None else -1)
        try:
            if not acquired:
                log.warning(f"[{key}] Gave up waiting for session lock after {wait}s")
                raise CapabilityFailure(f"Session {key} is busy, retry later")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    self._entries.pop(key, None)
