"""Multi-workstation sync."""

from .engine import SyncEngine
from .resolve import Strategy, merge_entries
from .transport import DirectoryTransport, GitTransport, HttpTransport, Transport, build_transport

__all__ = [
    "DirectoryTransport",
    "GitTransport",
    "HttpTransport",
    "Strategy",
    "SyncEngine",
    "Transport",
    "build_transport",
    "merge_entries",
]
