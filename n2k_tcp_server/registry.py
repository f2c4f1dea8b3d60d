"""Per-server registry of connected TCP clients."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional


@dataclass
class ConnectionEntry:
    """An accepted client connection."""

    id: int
    remote_address: str
    remote_port: int
    writer: asyncio.StreamWriter
    connected_at: float = field(default_factory=time.time)

    @property
    def name(self) -> str:
        """Display name in ``address:port`` form."""
        return f"{self.remote_address}:{self.remote_port}"


class ConnectionRegistry:
    """
    Tracks the open connections of one server.

    Ids start at 0 and are never reused. All access happens on the event
    loop thread, so no locking is done.
    """

    def __init__(self):
        self._entries: Dict[int, ConnectionEntry] = {}
        self._id_sequence = 0

    def register(self, writer: asyncio.StreamWriter) -> int:
        """
        Store a newly accepted connection.

        Args:
            writer: Stream writer of the accepted socket

        Returns:
            The connection id
        """
        conn_id = self._id_sequence
        self._id_sequence += 1

        peer = writer.get_extra_info("peername")
        if isinstance(peer, tuple) and len(peer) >= 2:
            address, port = str(peer[0]), int(peer[1])
        else:
            address, port = str(peer), 0

        self._entries[conn_id] = ConnectionEntry(
            id=conn_id,
            remote_address=address,
            remote_port=port,
            writer=writer,
        )
        return conn_id

    def unregister(self, conn_id: int) -> Optional[ConnectionEntry]:
        """Remove a connection; returns the entry or None if already gone."""
        return self._entries.pop(conn_id, None)

    def snapshot(self) -> List[ConnectionEntry]:
        """Point-in-time list of entries in id order."""
        return [self._entries[k] for k in sorted(self._entries)]

    def clear(self) -> List[ConnectionEntry]:
        """Remove and return every entry."""
        entries = self.snapshot()
        self._entries.clear()
        return entries

    def get(self, conn_id: int) -> Optional[ConnectionEntry]:
        return self._entries.get(conn_id)

    @property
    def next_id(self) -> int:
        return self._id_sequence

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conn_id: object) -> bool:
        return conn_id in self._entries

    def __iter__(self) -> Iterator[ConnectionEntry]:
        return iter(self.snapshot())
