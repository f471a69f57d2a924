"""
Connection registry: every open transport, its role and participant binding.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger('ConnectionRegistry')


class Role(str, Enum):
    ANONYMOUS = 'anonymous'
    PARTICIPANT = 'participant'
    ORGANIZER = 'organizer'


@dataclass
class Connection:
    """One transport session."""
    id: str
    transport: Any
    role: Role = Role.ANONYMOUS
    participant_id: Optional[str] = None
    alive: bool = True
    connected_at: float = field(default_factory=time.time)

    @property
    def remote_address(self) -> Optional[str]:
        address = getattr(self.transport, 'remote_address', None)
        if isinstance(address, (tuple, list)) and address:
            return f"{address[0]}:{address[1]}" if len(address) > 1 else str(address[0])
        return str(address) if address else None


class ConnectionRegistry:
    """In-process registry of connections.

    Only ever touched from the event loop, so no locking.
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def register(self, transport: Any) -> str:
        connection_id = str(uuid.uuid4())[:8]
        while connection_id in self._connections:
            connection_id = str(uuid.uuid4())[:8]
        self._connections[connection_id] = Connection(id=connection_id, transport=transport)
        logger.debug(f"Registered connection {connection_id}. Total: {len(self._connections)}")
        return connection_id

    def mark_role(self, connection_id: str, role, participant_id: Optional[str] = None) -> Connection:
        """Bind a role (and optionally a participant id) to a connection.

        Raises ValueError for roles outside the Role enum and KeyError for
        unknown connection ids.
        """
        role = Role(role)
        connection = self._connections[connection_id]
        connection.role = role
        if participant_id is not None:
            connection.participant_id = str(participant_id)
        return connection

    def unregister(self, connection_id: str) -> Optional[Connection]:
        connection = self._connections.pop(connection_id, None)
        if connection:
            logger.debug(f"Unregistered connection {connection_id}. Total: {len(self._connections)}")
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def list_by_role(self, role) -> List[Connection]:
        role = Role(role)
        return [c for c in self._connections.values() if c.role is role]

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def mark_alive(self, connection_id: str, alive: bool = True) -> None:
        connection = self._connections.get(connection_id)
        if connection:
            connection.alive = alive

    def counts(self) -> Dict[str, int]:
        counts = {role.value: 0 for role in Role}
        for connection in self._connections.values():
            counts[connection.role.value] += 1
        return counts

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections
