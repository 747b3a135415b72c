"""
Client-side TLS session caches.

A `TlsContext` with a session cache offers the last session it saw for a server name
when it connects to the same server again, which lets the server resume instead of
running a full handshake.
"""

import collections
import threading
from abc import ABC
from abc import abstractmethod

from OpenSSL import SSL


class SessionCache(ABC):
    """Thread-safe mapping from a cache key (usually the server name) to a session."""

    @abstractmethod
    def put(self, key: str, session: SSL.Session) -> None:
        """Add the given session to the cache, replacing any previous entry."""

    @abstractmethod
    def get(self, key: str) -> SSL.Session | None:
        """Return the cached session, if it exists."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove the cached session, if it exists."""

    @abstractmethod
    def clear(self) -> None:
        """Remove all entries."""


class NoSessionCache(SessionCache):
    """A session cache that never caches anything."""

    def put(self, key: str, session: SSL.Session) -> None:
        pass

    def get(self, key: str) -> SSL.Session | None:
        return None

    def remove(self, key: str) -> None:
        pass

    def clear(self) -> None:
        pass

    def __len__(self):
        return 0


class SimpleCache(SessionCache):
    """
    A least-recently-used cache holding up to `num_entries` sessions.
    """

    def __init__(self, num_entries: int):
        if num_entries < 1:
            raise ValueError(f"Session cache needs room for at least one entry, not {num_entries}.")
        self.num_entries = num_entries
        self._cache: collections.OrderedDict[str, SSL.Session] = collections.OrderedDict()
        self._lock = threading.Lock()

    def put(self, key: str, session: SSL.Session) -> None:
        with self._lock:
            self._cache[key] = session
            self._cache.move_to_end(key)
            while len(self._cache) > self.num_entries:
                self._cache.popitem(last=False)

    def get(self, key: str) -> SSL.Session | None:
        with self._lock:
            try:
                self._cache.move_to_end(key)
            except KeyError:
                return None
            return self._cache[key]

    def remove(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self):
        with self._lock:
            return len(self._cache)

    def __contains__(self, key):
        with self._lock:
            return key in self._cache
