"""
Broadcast gateway: live connection registry with rooms.

Registry mutations (connect, disconnect, join, leave) are plain methods
with no ``await`` inside, so on the event loop each one is atomic with
respect to a broadcast, which always iterates a snapshot taken at call
time.  Broadcasting only schedules the sends and returns; a slow or dead
socket never holds up the caller.  Sockets whose send fails or times out
are dropped from the registry.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Protocol


class Socket(Protocol):
    async def send_json(self, data: Any) -> None: ...


class BroadcastGateway:
    def __init__(self, send_timeout: float = 5.0, logger: logging.Logger | None = None) -> None:
        self._sockets: dict[str, Socket] = {}
        self._rooms: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}
        self._send_timeout = send_timeout
        self._log = logger or logging.getLogger(__name__)
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def on_connect(self, connection_id: str, socket: Socket) -> None:
        self._sockets[connection_id] = socket
        self._memberships.setdefault(connection_id, set())
        self._log.info("Client connected: %s", connection_id)

    def on_disconnect(self, connection_id: str) -> None:
        if self._sockets.pop(connection_id, None) is None:
            return
        for room in self._memberships.pop(connection_id, set()):
            self._discard_member(room, connection_id)
        self._log.info("Client disconnected: %s", connection_id)

    def join(self, connection_id: str, room: str) -> bool:
        if connection_id not in self._sockets:
            return False
        self._rooms.setdefault(room, set()).add(connection_id)
        self._memberships[connection_id].add(room)
        self._log.info("Client %s joined room: %s", connection_id, room)
        return True

    def leave(self, connection_id: str, room: str) -> bool:
        if connection_id not in self._sockets:
            return False
        self._memberships[connection_id].discard(room)
        self._discard_member(room, connection_id)
        self._log.info("Client %s left room: %s", connection_id, room)
        return True

    def _discard_member(self, room: str, connection_id: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[room]

    @property
    def connection_count(self) -> int:
        return len(self._sockets)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    def rooms_of(self, connection_id: str) -> frozenset[str]:
        return frozenset(self._memberships.get(connection_id, ()))

    def members(self, room: str) -> frozenset[str]:
        return frozenset(self._rooms.get(room, ()))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def broadcast_all(self, event: str, payload: Any) -> asyncio.Task:
        targets = list(self._sockets.items())
        return self._dispatch(targets, {"event": event, "data": payload})

    def broadcast_room(self, room: str, event: str, payload: Any) -> asyncio.Task:
        targets = [(cid, self._sockets[cid]) for cid in self._rooms.get(room, ()) if cid in self._sockets]
        return self._dispatch(targets, {"event": event, "data": payload})

    def _dispatch(self, targets: list[tuple[str, Socket]], message: dict) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(targets, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, targets: list[tuple[str, Socket]], message: dict) -> None:
        results = await asyncio.gather(
            *(asyncio.wait_for(sock.send_json(message), timeout=self._send_timeout) for _, sock in targets),
            return_exceptions=True,
        )
        for (connection_id, sock), result in zip(targets, results):
            if isinstance(result, BaseException):
                self._log.warning(
                    "Dropping client %s after failed %r send: %r",
                    connection_id, message.get("event"), result,
                )
                # The id may have been reused by a new socket in the meantime.
                if self._sockets.get(connection_id) is sock:
                    self.on_disconnect(connection_id)

    async def flush(self) -> None:
        """Wait for every scheduled send to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._pending.clear()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_inbound(self, connection_id: str, event: str, data: Any) -> dict:
        """Handle one client frame and return the acknowledgement for the sender."""
        if event == "message":
            self._log.info("Message received from %s: %r", connection_id, data)
            self.broadcast_all(
                "message",
                {
                    "clientId": connection_id,
                    "data": data,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
            return {"success": True, "message": "Message received"}

        if event in ("join-room", "leave-room"):
            if not isinstance(data, str) or not data:
                return {"success": False, "error": "room name must be a non-empty string"}
            ok = self.join(connection_id, data) if event == "join-room" else self.leave(connection_id, data)
            return {"success": ok, "room": data}

        return {"success": False, "error": f"unknown event {event!r}"}
