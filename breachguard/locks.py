"""
Per-target advisory locks for fix application.

Two fixes touching the same file or table must not overlap.  Keys are
normalized strings (``file:/abs/path``, ``table:wp_options``); a fix takes
all of its keys in sorted order, so concurrent fixes with overlapping
targets cannot deadlock.  Waiting is bounded: past the timeout the attempt
fails with LockTimeout and any keys already taken are released.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from .config import LockSettings
from .errors import LockTimeout

logger = logging.getLogger(__name__)


class LockManager:
    def __init__(self, settings: Optional[LockSettings] = None):
        self.settings = settings or LockSettings()
        self._cond = threading.Condition()
        self._holders: Dict[str, str] = {}

    def holder(self, key: str) -> Optional[str]:
        with self._cond:
            return self._holders.get(key)

    def held_keys(self) -> List[str]:
        with self._cond:
            return sorted(self._holders)

    def acquire(self, keys: Iterable[str], owner: str, timeout: Optional[float] = None) -> List[str]:
        """Take every key for *owner* or none of them."""
        timeout = self.settings.timeout_seconds if timeout is None else timeout
        ordered = sorted(set(keys))
        deadline = time.monotonic() + timeout
        taken: List[str] = []
        with self._cond:
            try:
                for key in ordered:
                    while key in self._holders and self._holders[key] != owner:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            logger.warning("Lock wait for %s timed out after %.1fs (held by %s)",
                                           key, timeout, self._holders[key])
                            raise LockTimeout(key, timeout, self._holders[key])
                        self._cond.wait(min(remaining, self.settings.poll_interval))
                    if key not in self._holders:
                        self._holders[key] = owner
                        taken.append(key)
            except LockTimeout:
                for key in taken:
                    del self._holders[key]
                self._cond.notify_all()
                raise
        logger.debug("Locked %s for %s", ", ".join(ordered), owner)
        return ordered

    def release(self, keys: Iterable[str], owner: str) -> None:
        with self._cond:
            for key in keys:
                if self._holders.get(key) == owner:
                    del self._holders[key]
            self._cond.notify_all()

    @contextmanager
    def hold(self, keys: Iterable[str], owner: str,
             timeout: Optional[float] = None) -> Iterator[List[str]]:
        acquired = self.acquire(keys, owner, timeout)
        try:
            yield acquired
        finally:
            self.release(acquired, owner)
