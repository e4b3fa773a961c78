from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional, Set

LOGGER = logging.getLogger("huddle.rooms")

DEFAULT_OUTBOX_LIMIT = 256

_handles = itertools.count(1)


class Connection:
    """
    One live channel. Outbound events are queued on ``outbox`` and drained by
    a writer task, so a broadcast never waits on the remote socket.
    """

    def __init__(self, user_id: str, username: str = "", outbox_limit: int = DEFAULT_OUTBOX_LIMIT):
        self.handle = next(_handles)
        self.user_id = user_id
        self.username = username
        self.rooms: Set[str] = set()
        self.outbox: "asyncio.Queue[Optional[dict]]" = asyncio.Queue(maxsize=max(1, int(outbox_limit)))
        self.closed = False
        self.overflowed = False

    def deliver(self, payload: dict) -> bool:
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    def close(self, overflowed: bool = False) -> None:
        if self.closed:
            return
        self.closed = True
        self.overflowed = overflowed
        # Pending events are discarded; the writer sees None and stops.
        while True:
            try:
                self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
        self.outbox.put_nowait(None)

    def __repr__(self) -> str:
        return f"<Connection #{self.handle} user={self.user_id} rooms={sorted(self.rooms)}>"


class RoomRegistry:
    """
    chat id -> currently subscribed connections.

    Mutations are plain synchronous methods, so each one runs to completion on
    the event loop. ``lock(chat_id)`` hands out the per-chat lock that callers
    hold across multi-step work (append then broadcast, join then read).
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Connection]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, chat_id: str) -> asyncio.Lock:
        # Kept for the process lifetime. Callers authorize first, so this only
        # grows with the number of chats that exist.
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        return lock

    def join(self, chat_id: str, connection: Connection) -> None:
        if connection.closed:
            return
        self._rooms.setdefault(chat_id, set()).add(connection)
        connection.rooms.add(chat_id)

    def leave(self, chat_id: str, connection: Connection) -> None:
        connection.rooms.discard(chat_id)
        room = self._rooms.get(chat_id)
        if room is None:
            return
        room.discard(connection)
        if not room:
            self._rooms.pop(chat_id, None)

    def drop_connection(self, connection: Connection) -> None:
        for chat_id in list(connection.rooms):
            self.leave(chat_id, connection)

    def broadcast(self, chat_id: str, payload: dict) -> int:
        delivered = 0
        overflowed: List[Connection] = []
        for connection in list(self._rooms.get(chat_id, ())):
            if connection.deliver(payload):
                delivered += 1
            else:
                overflowed.append(connection)

        for connection in overflowed:
            self.evict(connection, chat_id)
        return delivered

    def evict(self, connection: Connection, chat_id: str) -> None:
        """Drop a connection whose outbox is full from every room and close it."""
        LOGGER.warning(
            "dropping slow connection #%s user=%s (outbox full, chat=%s)",
            connection.handle,
            connection.user_id,
            chat_id,
        )
        self.drop_connection(connection)
        connection.close(overflowed=True)

    def subscribers(self, chat_id: str) -> Set[Connection]:
        return set(self._rooms.get(chat_id, ()))

    def rooms_of(self, connection: Connection) -> Set[str]:
        return set(connection.rooms)

    def stats(self) -> Dict[str, Any]:
        return {
            "rooms": len(self._rooms),
            "subscriptions": sum(len(room) for room in self._rooms.values()),
        }
