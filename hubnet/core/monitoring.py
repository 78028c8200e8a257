# hubnet/core/monitoring.py
"""
Connection Monitoring

Reads `wg show <if> dump` from a hub host and folds it into Connection rows:
- telemetry (bytes, endpoint, last handshake)
- connection state machine, walked one legal step at a time
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..database.models import Connection, ConnectionStatus, Hub
from ..exceptions import RemoteExecutionFailure
from ..remote import commands
from ..remote.executor import RemoteExecutor
from .domain_events import EventTypes, emit_async
from .events import EventBus

logger = logging.getLogger(__name__)

# What a dump says about one peer
OBSERVED_RECENT = "recent"      # handshake within the timeout
OBSERVED_STALE = "stale"        # handshake, but too long ago
OBSERVED_NEVER = "never"        # configured, never handshaked
OBSERVED_ABSENT = "absent"      # not on the interface at all

# Shortest legal walk for each (current state, observation)
_PATHS = {
    OBSERVED_RECENT: {
        ConnectionStatus.PENDING: [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED],
        ConnectionStatus.CONNECTING: [ConnectionStatus.CONNECTED],
        ConnectionStatus.CONNECTED: [],
        ConnectionStatus.FAILED: [ConnectionStatus.CONNECTED],
        ConnectionStatus.DISCONNECTED: [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED],
    },
    OBSERVED_STALE: {
        ConnectionStatus.PENDING: [ConnectionStatus.CONNECTING],
        ConnectionStatus.CONNECTING: [ConnectionStatus.FAILED],
        ConnectionStatus.CONNECTED: [ConnectionStatus.FAILED],
        ConnectionStatus.FAILED: [],
        ConnectionStatus.DISCONNECTED: [ConnectionStatus.CONNECTING],
    },
    OBSERVED_NEVER: {
        ConnectionStatus.PENDING: [ConnectionStatus.CONNECTING],
        ConnectionStatus.CONNECTING: [],
        ConnectionStatus.CONNECTED: [ConnectionStatus.FAILED],
        ConnectionStatus.FAILED: [],
        ConnectionStatus.DISCONNECTED: [ConnectionStatus.CONNECTING],
    },
    OBSERVED_ABSENT: {
        ConnectionStatus.PENDING: [ConnectionStatus.DISCONNECTED],
        ConnectionStatus.CONNECTING: [ConnectionStatus.DISCONNECTED],
        ConnectionStatus.CONNECTED: [ConnectionStatus.DISCONNECTED],
        ConnectionStatus.FAILED: [ConnectionStatus.DISCONNECTED],
        ConnectionStatus.DISCONNECTED: [],
    },
}


@dataclass(frozen=True)
class PeerSnapshot:
    """One peer line of `wg show dump`"""
    public_key: str
    endpoint: Optional[str]
    allowed_ips: str
    latest_handshake: Optional[datetime]
    transfer_rx: int
    transfer_tx: int
    persistent_keepalive: Optional[int]

    def observation(self, now: datetime, timeout_seconds: int) -> str:
        if self.latest_handshake is None:
            return OBSERVED_NEVER
        if now - self.latest_handshake <= timedelta(seconds=timeout_seconds):
            return OBSERVED_RECENT
        return OBSERVED_STALE


def parse_wg_dump(output: str) -> List[PeerSnapshot]:
    """
    Parse `wg show <if> dump`

    Peer lines have 8 tab separated fields:
        public-key preshared-key endpoint allowed-ips latest-handshake
        transfer-rx transfer-tx persistent-keepalive
    The interface line (4 fields, includes the private key) is skipped.
    """
    peers = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) != 8:
            continue
        try:
            handshake = int(parts[4])
            rx = int(parts[5])
            tx = int(parts[6])
        except ValueError:
            logger.warning(f"Unparseable peer line for {parts[0][:16]}...")
            continue
        peers.append(PeerSnapshot(
            public_key=parts[0],
            endpoint=parts[2] if parts[2] != "(none)" else None,
            allowed_ips=parts[3],
            latest_handshake=datetime.utcfromtimestamp(handshake) if handshake else None,
            transfer_rx=rx,
            transfer_tx=tx,
            persistent_keepalive=int(parts[7]) if parts[7].isdigit() else None,
        ))
    return peers


def connection_path(current: ConnectionStatus, observation: str) -> List[ConnectionStatus]:
    """States to walk through, empty if nothing changes"""
    return list(_PATHS[observation][current])


def advance_connection(current: ConnectionStatus, observation: str) -> ConnectionStatus:
    path = connection_path(current, observation)
    return path[-1] if path else current


class ConnectionMonitor:
    """Refreshes Connection rows of a hub from its live interface"""

    def __init__(
        self,
        executor: RemoteExecutor,
        handshake_timeout: int = 180,
        command_timeout: float = 30.0,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.executor = executor
        self.handshake_timeout = handshake_timeout
        self.command_timeout = command_timeout
        self.bus = bus
        self.clock = clock

    async def read_peers(self, hub: Hub) -> List[PeerSnapshot]:
        result = await self.executor.execute(
            hub.ssh_host, commands.wg_dump(hub.interface_name), self.command_timeout
        )
        if not result.ok:
            raise RemoteExecutionFailure(
                f"wg show dump failed on {hub.name}: {result.stderr.strip()}",
                host=hub.ssh_host,
                command=commands.wg_dump(hub.interface_name),
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return parse_wg_dump(result.stdout)

    async def collect(self, db: Session, hub: Hub) -> List[PeerSnapshot]:
        """
        Update every spoke connection of `hub`

        Returns:
            The raw peer snapshots, including peers that match no spoke
        """
        snapshots = await self.read_peers(hub)
        by_key: Dict[str, PeerSnapshot] = {s.public_key: s for s in snapshots}
        now = self.clock()

        existing = {c.spoke_id: c for c in db.query(Connection).filter(Connection.hub_id == hub.id).all()}
        changes = []

        for spoke in hub.spokes:
            connection = existing.get(spoke.id)
            if connection is None:
                connection = Connection(
                    hub_id=hub.id,
                    spoke_id=spoke.id,
                    connection_status=ConnectionStatus.PENDING.value,
                )
                db.add(connection)

            snapshot = by_key.get(spoke.public_key)
            observation = snapshot.observation(now, self.handshake_timeout) if snapshot else OBSERVED_ABSENT

            before = ConnectionStatus(connection.connection_status or ConnectionStatus.PENDING.value)
            for step in connection_path(before, observation):
                connection.transition_to(step)

            connection.peer_public_key = spoke.public_key
            if snapshot:
                connection.endpoint = snapshot.endpoint
                connection.bytes_received = snapshot.transfer_rx
                connection.bytes_sent = snapshot.transfer_tx
                connection.last_handshake = snapshot.latest_handshake
                connection.last_seen = now
            spoke.connection_status = connection.connection_status

            if connection.connection_status != before.value:
                changes.append((spoke, before.value, connection.connection_status))

        db.commit()

        for spoke, old, new in changes:
            logger.info(f"Spoke {spoke.name} on {hub.name}: {old} -> {new}")
            await emit_async(self.bus, EventTypes.CONNECTION_STATUS_CHANGED, {
                "hub_id": hub.id,
                "spoke_id": spoke.id,
                "old_status": old,
                "new_status": new,
            }, source="monitoring")

        unknown = set(by_key) - {s.public_key for s in hub.spokes}
        if unknown:
            logger.debug(f"Hub {hub.name} has {len(unknown)} peer(s) that match no spoke")

        return snapshots
