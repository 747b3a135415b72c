from tlsmimic.config import ContextBuilder
from tlsmimic.config import Side
from tlsmimic.config import TlsContext
from tlsmimic.connection import Connection
from tlsmimic.stream import accept
from tlsmimic.stream import connect
from tlsmimic.stream import open_connection
from tlsmimic.stream import TlsStream
from tlsmimic.version import VERSION

__all__ = [
    "VERSION",
    "ContextBuilder",
    "Side",
    "TlsContext",
    "Connection",
    "TlsStream",
    "accept",
    "connect",
    "open_connection",
]
