"""Which connections are open and which room each one joined."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

AUDIENCE_SENDER = "sender"
AUDIENCE_ROOM = "room"
AUDIENCE_ROOM_EXCEPT_SENDER = "room_except_sender"


class RoomRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sockets: Dict[int, Any] = {}  # conn_id -> websocket
        self._meta: Dict[int, Dict[str, Any]] = {}  # conn_id -> {host,port,ua,connected_at}
        self._room_of: Dict[int, str] = {}  # conn_id -> room_id
        self._members: Dict[str, Set[int]] = {}  # room_id -> conn_ids

    def connect(self, conn_id: int, socket: Any = None, meta: Optional[Dict[str, Any]] = None) -> None:
        info = dict(meta or {})
        info.setdefault("connected_at", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        with self._lock:
            self._sockets[conn_id] = socket
            self._meta[conn_id] = info

    def disconnect(self, conn_id: int) -> Optional[str]:
        """Forget the connection; returns the room it was in, if any."""
        with self._lock:
            self._sockets.pop(conn_id, None)
            self._meta.pop(conn_id, None)
            room_id = self._room_of.pop(conn_id, None)
            if room_id is not None:
                self._discard_member(room_id, conn_id)
        return room_id

    def join(self, conn_id: int, room_id: str) -> None:
        """Put the connection in ``room_id``, leaving any previous room."""
        with self._lock:
            if conn_id not in self._sockets:
                self._sockets[conn_id] = None
                self._meta[conn_id] = {"connected_at": datetime.now().strftime("%Y-%m-%d %H:%M:%S")}
            old = self._room_of.get(conn_id)
            if old is not None and old != room_id:
                self._discard_member(old, conn_id)
            self._room_of[conn_id] = room_id
            self._members.setdefault(room_id, set()).add(conn_id)

    def room_of(self, conn_id: int) -> Optional[str]:
        with self._lock:
            return self._room_of.get(conn_id)

    def members(self, room_id: str) -> List[int]:
        with self._lock:
            return sorted(self._members.get(room_id, ()))

    def recipients(self, room_id: str, sender: int, audience: str) -> List[int]:
        if audience == AUDIENCE_SENDER:
            return [sender]
        members = self.members(room_id)
        if audience == AUDIENCE_ROOM_EXCEPT_SENDER:
            return [conn_id for conn_id in members if conn_id != sender]
        if audience == AUDIENCE_ROOM:
            return members
        raise ValueError(f"Unknown audience: {audience!r}")

    def socket_for(self, conn_id: int) -> Any:
        with self._lock:
            return self._sockets.get(conn_id)

    def rooms(self) -> Dict[str, int]:
        with self._lock:
            return {room_id: len(conns) for room_id, conns in self._members.items()}

    def sessions_snapshot(self) -> List[Dict[str, Any]]:
        """Connected clients and their rooms, for the operator status page."""
        out: List[Dict[str, Any]] = []
        with self._lock:
            for conn_id in self._sockets:
                meta = self._meta.get(conn_id, {})
                out.append(
                    {
                        "conn_id": int(conn_id),
                        "room_id": self._room_of.get(conn_id),
                        "host": meta.get("host", "?"),
                        "port": meta.get("port", ""),
                        "user_agent": meta.get("ua", ""),
                        "connected_at": meta.get("connected_at", ""),
                    }
                )
        out.sort(key=lambda s: s["conn_id"])
        return out

    def _discard_member(self, room_id: str, conn_id: int) -> None:
        conns = self._members.get(room_id)
        if conns is None:
            return
        conns.discard(conn_id)
        if not conns:
            self._members.pop(room_id, None)
