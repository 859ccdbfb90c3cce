"""Registry of live Socket.IO connections."""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from crowdguess.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """One live transport connection and what it is attached to."""
    sid: str
    namespace: str = '/ws'
    session_id: Optional[str] = None
    participant_id: Optional[str] = None
    is_observer: bool = False
    connected_at: datetime = field(default_factory=utcnow)


class ConnectionRegistry:
    """Tracks every open connection by socket id.

    A connection is attached to at most one session at a time. Room
    membership itself is kept by ``RoomBroadcaster``, which is the only
    caller of ``attach`` and ``unregister``.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.RLock()

    def register(self, sid: str, namespace: str = '/ws') -> Connection:
        with self._lock:
            connection = Connection(sid=sid, namespace=namespace)
            self._connections[sid] = connection
        logger.debug("Registered connection %s on %s", sid, namespace)
        return connection

    def unregister(self, sid: str) -> Optional[Connection]:
        with self._lock:
            connection = self._connections.pop(sid, None)
        if connection:
            logger.debug("Unregistered connection %s (session=%s)", sid, connection.session_id)
        return connection

    def get(self, sid: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(sid)

    def attach(
        self,
        sid: str,
        session_id: str,
        participant_id: Optional[str] = None,
        observer: bool = False,
    ) -> Optional[str]:
        """Point a connection at a session; returns the session it was attached to before."""
        with self._lock:
            connection = self._connections.get(sid)
            if connection is None:
                raise KeyError(sid)
            previous = connection.session_id
            connection.session_id = session_id
            connection.participant_id = participant_id
            connection.is_observer = observer
            return previous

    def connections(self, sids) -> List[Connection]:
        with self._lock:
            return [self._connections[sid] for sid in sids if sid in self._connections]

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, sid) -> bool:
        with self._lock:
            return sid in self._connections
