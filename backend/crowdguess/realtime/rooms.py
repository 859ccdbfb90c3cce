"""Session rooms and best-effort fan-out over Socket.IO."""
import logging
import threading
from typing import Dict, List, Optional, Set

from crowdguess.realtime.registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class RoomBroadcaster:
    """Maps a session id to the connections subscribed to it.

    Delivery is per connection: a connection that errors is logged and
    skipped, it never blocks the rest of the room.
    """

    def __init__(self, connections: ConnectionRegistry, socketio=None) -> None:
        self._connections = connections
        self._socketio = socketio
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def init_app(self, app, socketio) -> None:
        self._socketio = socketio
        app.extensions['session_rooms'] = self

    # ---- membership ----

    def open(self, sid: str, namespace: str = '/ws') -> Connection:
        return self._connections.register(sid, namespace)

    def join(
        self,
        sid: str,
        session_id: str,
        participant_id: Optional[str] = None,
        observer: bool = False,
    ) -> Optional[str]:
        """Move a connection into ``session_id``'s room, leaving any previous room.

        Returns the id of the room that was left, if any.
        """
        with self._lock:
            previous = self._connections.attach(sid, session_id, participant_id, observer)
            left = previous if previous and previous != session_id else None
            if left:
                self._discard(left, sid)
            self._rooms.setdefault(session_id, set()).add(sid)
        logger.info(
            "Connection %s joined room %s (participant=%s observer=%s)",
            sid, session_id, participant_id, observer,
        )
        return left

    def drop(self, sid: str) -> Optional[Connection]:
        """Forget a closed connection: leave its room and unregister it."""
        with self._lock:
            connection = self._connections.unregister(sid)
            if connection and connection.session_id:
                self._discard(connection.session_id, sid)
        return connection

    def _discard(self, session_id: str, sid: str) -> None:
        members = self._rooms.get(session_id)
        if members is None:
            return
        members.discard(sid)
        if not members:
            del self._rooms[session_id]

    def members(self, session_id: str, include_observers: bool = True) -> List[Connection]:
        with self._lock:
            sids = list(self._rooms.get(session_id, ()))
        members = self._connections.connections(sids)
        if include_observers:
            return members
        return [c for c in members if not c.is_observer]

    def participant_count(self, session_id: str) -> int:
        return len(self.members(session_id, include_observers=False))

    # ---- delivery ----

    def send(self, sid: str, message) -> bool:
        """Unicast an outbound protocol message to one connection."""
        connection = self._connections.get(sid)
        if connection is None:
            logger.debug("Dropping %s for unknown connection %s", message.event, sid)
            return False
        return self._deliver(connection, message.event, message.payload())

    def broadcast(self, session_id: str, message, include_observers: bool = True) -> int:
        """Send ``message`` to every member of the room; returns how many deliveries succeeded."""
        payload = message.payload()
        delivered = 0
        for connection in self.members(session_id, include_observers=include_observers):
            if self._deliver(connection, message.event, payload):
                delivered += 1
        logger.debug("Broadcast %s to room %s (%d delivered)", message.event, session_id, delivered)
        return delivered

    def _deliver(self, connection: Connection, event: str, payload) -> bool:
        try:
            self._socketio.emit(event, payload, to=connection.sid, namespace=connection.namespace)
        except Exception:
            logger.warning("Delivery of %s to %s failed", event, connection.sid, exc_info=True)
            return False
        return True
