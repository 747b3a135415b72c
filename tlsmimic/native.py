"""
Ownership of native OpenSSL objects.

Every native object tlsmimic acquires is bound to a guard. Releasing a guard frees its
reference exactly once: explicitly via `release()`, by leaving a `with` block, or when the
guard is garbage collected. Shared objects (contexts, certificates, keys, DH parameters)
are reference counted: `share()` hands out another guard for the same native object, and
the object is only dropped once the last guard is gone.

The module also keeps a process-wide count of live native objects per kind, which makes
leaks observable (see `handle_counts`).
"""

import collections
import logging
import threading
import weakref
from collections.abc import Callable
from typing import Any
from typing import Generic
from typing import TypeVar

from OpenSSL import crypto
from OpenSSL import SSL

from tlsmimic.error_queue import native_call
from tlsmimic.exceptions import ReleasedHandleError
from tlsmimic.exceptions import TlsSystemError
from tlsmimic.exceptions import Unsupported

logger = logging.getLogger(__name__)

T = TypeVar("T")

BIO_READ_SIZE = 65535

_live_lock = threading.Lock()
_live: collections.Counter[str] = collections.Counter()


def _acquired(kind: str) -> None:
    with _live_lock:
        _live[kind] += 1


def _released(kind: str) -> None:
    with _live_lock:
        _live[kind] -= 1
        assert _live[kind] >= 0, f"{kind} released more often than acquired"


def handle_counts() -> dict[str, int]:
    """Number of live native objects, per kind."""
    with _live_lock:
        return {k: v for k, v in _live.items() if v}


def live_handles(kind: str) -> int:
    with _live_lock:
        return _live[kind]


def has_symbol(name: str) -> bool:
    """Check if the linked OpenSSL bindings export `name`."""
    return hasattr(SSL._lib, name)  # type: ignore


def native_symbol(name: str) -> Callable[..., Any]:
    try:
        return getattr(SSL._lib, name)  # type: ignore
    except AttributeError:
        raise Unsupported(
            f"{name} is not available in the linked TLS library "
            f"({openssl_version()})."
        ) from None


def call_native(name: str, *args: Any) -> Any:
    """Call an optional symbol, raising `Unsupported` if the bindings lack it."""
    return native_symbol(name)(*args)


def openssl_version() -> str:
    v = SSL.SSLeay_version(SSL.SSLEAY_VERSION)
    return v.decode() if isinstance(v, bytes) else v


def _is_null(obj: Any) -> bool:
    if obj is None:
        return True
    ffi = SSL._ffi  # type: ignore
    return isinstance(obj, ffi.CData) and obj == ffi.NULL


class _Resource:
    """A native object plus the number of guards referencing it."""

    def __init__(self, kind: str, obj: Any, free: Callable[[Any], None] | None):
        self.kind = kind
        self.obj = obj
        self.free = free
        self.refs = 0
        self.lock = threading.Lock()
        _acquired(kind)

    def incref(self) -> None:
        with self.lock:
            if self.obj is None:
                raise ReleasedHandleError(f"{self.kind} has already been released.")
            self.refs += 1

    def decref(self) -> None:
        with self.lock:
            self.refs -= 1
            if self.refs > 0:
                return
            obj, self.obj = self.obj, None
        if self.free is not None:
            self.free(obj)
        _released(self.kind)


class Handle(Generic[T]):
    """
    Exclusive guard for a single native object.
    """

    kind: str = "handle"
    _resource: _Resource
    _finalizer: weakref.finalize

    def __init__(self, obj: T, free: Callable[[T], None] | None = None):
        if _is_null(obj):
            raise TlsSystemError(f"Refusing to wrap an invalid {self.kind} handle.")
        self._attach(_Resource(self.kind, obj, free))

    def _attach(self, resource: _Resource) -> None:
        resource.incref()
        self._resource = resource
        self._finalizer = weakref.finalize(self, resource.decref)

    @property
    def raw(self) -> T:
        """The wrapped native object. Raises if the guard has been released."""
        obj = self._resource.obj
        if not self._finalizer.alive or obj is None:
            raise ReleasedHandleError(f"{self.kind} handle has already been released.")
        return obj

    @property
    def released(self) -> bool:
        return not self._finalizer.alive

    def release(self) -> None:
        # weakref.finalize runs its callback at most once.
        self._finalizer()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def __repr__(self):
        state = "released" if self.released else "live"
        return f"<{type(self).__name__} {state}>"


class SharedHandle(Handle[T]):
    """
    Reference-counted guard. The native object lives as long as any of its guards.
    """

    def share(self):
        """Return a new guard for the same native object."""
        if self.released:
            raise ReleasedHandleError(f"{self.kind} handle has already been released.")
        new = object.__new__(type(self))
        new._attach(self._resource)
        return new

    @property
    def refcount(self) -> int:
        return self._resource.refs


class ContextHandle(SharedHandle[SSL.Context]):
    kind = "context"


class ConnectionHandle(Handle[SSL.Connection]):
    kind = "connection"


class CertificateHandle(SharedHandle[crypto.X509]):
    kind = "certificate"


class PrivateKeyHandle(SharedHandle[crypto.PKey]):
    kind = "private_key"


class DHParamsHandle(SharedHandle[Any]):
    kind = "dh_params"

    def __init__(self, dh: Any):
        super().__init__(dh, SSL._lib.DH_free)  # type: ignore


class MemoryBioPair(Handle[SSL.Connection]):
    """
    The two in-memory byte queues between the TLS engine and the transport.

    The incoming queue is filled by the transport reader and drained by the engine.
    The outgoing queue is filled by the engine; `pull_outgoing` moves everything the engine
    has produced into a staging buffer from which the transport writer takes bytes in order.
    Both BIOs belong to the SSL object that is passed in and die with it.
    """

    kind = "bio_pair"

    def __init__(self, ssl_conn: SSL.Connection):
        super().__init__(ssl_conn)
        self._outgoing = bytearray()
        self.incoming_closed = False

    def release(self) -> None:
        self._outgoing.clear()
        super().release()

    def write_incoming(self, data: bytes) -> None:
        # bio_write errors for b"", so we need to check first if we actually received something.
        if not data:
            return
        if self.incoming_closed:
            raise ValueError("Cannot write to the incoming BIO after EOF.")
        conn = self.raw
        view = memoryview(data)
        with native_call("writing to the incoming BIO"):
            while view:
                written = conn.bio_write(bytes(view))
                view = view[written:]

    def close_incoming(self) -> None:
        if not self.incoming_closed:
            self.incoming_closed = True
            self.raw.bio_shutdown()

    def pull_outgoing(self) -> int:
        """Move everything the engine has written into the staging buffer."""
        conn = self.raw
        pulled = 0
        with native_call("reading from the outgoing BIO"):
            while True:
                try:
                    data = conn.bio_read(BIO_READ_SIZE)
                except SSL.WantReadError:
                    return pulled  # Okay, nothing more waiting to be sent.
                if not data:
                    return pulled
                self._outgoing.extend(data)
                pulled += len(data)

    @property
    def pending_outgoing(self) -> int:
        return len(self._outgoing)

    def peek_outgoing(self) -> bytes:
        return bytes(self._outgoing)

    def consume_outgoing(self, n: int) -> None:
        if n < 0 or n > len(self._outgoing):
            raise ValueError(f"Cannot consume {n} of {len(self._outgoing)} bytes.")
        del self._outgoing[:n]

    def take_outgoing(self) -> bytes:
        self.pull_outgoing()
        data = bytes(self._outgoing)
        self._outgoing.clear()
        return data
