"""Room membership and ordered broadcast for the chat relay.

In-memory only. A room is "job-<id>"; members are live sockets. Each room
has its own lock so broadcasts to a room go out one at a time and every
member sees the same order.
"""

import asyncio
import itertools
import json
import logging

from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class Member:
    """One connected socket. `send_text` is all the registry needs from it."""

    def __init__(self, websocket, user_id: str = ""):
        self.websocket = websocket
        self.user_id = user_id
        self.conn_id = next(_ids)
        self.rooms: set[str] = set()

    async def send(self, frame: dict):
        await self.websocket.send_text(json.dumps(frame))

    def __repr__(self):
        return f"Member({self.conn_id}, {self.user_id or 'anon'})"


class RoomRegistry:
    def __init__(self):
        self.rooms: dict[str, set[Member]] = {}
        self.members: set[Member] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    def connect(self, member: Member):
        self.members.add(member)

    def join(self, member: Member, room: str):
        self.members.add(member)
        self.rooms.setdefault(room, set()).add(member)
        member.rooms.add(room)

    def leave(self, member: Member, room: str):
        members = self.rooms.get(room)
        member.rooms.discard(room)
        if members is None:
            return
        members.discard(member)
        if not members:
            del self.rooms[room]
            self._locks.pop(room, None)

    def remove(self, member: Member):
        """Drop a member from every room (disconnect)."""
        for room in list(member.rooms):
            self.leave(member, room)
        self.members.discard(member)

    def is_member(self, member: Member, room: str) -> bool:
        return member in self.rooms.get(room, ())

    def _lock(self, room: str) -> asyncio.Lock:
        lock = self._locks.get(room)
        if lock is None:
            lock = self._locks[room] = asyncio.Lock()
        return lock

    async def broadcast(self, room: str, frame: dict) -> int:
        """Send frame to every member of room, in order. Returns deliveries."""
        delivered = 0
        async with self._lock(room):
            dead = []
            for member in list(self.rooms.get(room, ())):
                try:
                    await member.send(frame)
                    delivered += 1
                except (WebSocketDisconnect, RuntimeError, OSError) as e:
                    logger.warning("Dropping %s from %s: send failed (%s)", member, room, e)
                    dead.append(member)
            for member in dead:
                self.remove(member)
        return delivered

    def stats(self) -> dict:
        return {room: len(members) for room, members in sorted(self.rooms.items())}

    @property
    def connection_count(self) -> int:
        return len(self.members)
