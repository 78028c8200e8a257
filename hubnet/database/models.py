# hubnet/database/models.py
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from ..exceptions import InvalidStateTransition

Base = declarative_base()


class HubType(str, Enum):
    """
    Hub kinds, declared in deployment tier order.

    Later tiers may reference earlier tiers as peers, so iteration order
    of this enum is the rollout order.
    """
    WORKSTATION = "workstation"   # central management
    LOGGING = "logging"           # log aggregation sink
    GATEWAY = "gateway"           # NAT / internet egress
    CUSTOMER = "customer"         # isolated tenant network


class HubStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class SpokeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    ERROR = "error"


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


class PolicyRuleType(str, Enum):
    ISOLATION = "isolation"
    BANDWIDTH = "bandwidth"
    ACCESS = "access"
    FIREWALL = "firewall"


DEPLOYMENT_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.DEPLOYING},
    DeploymentStatus.DEPLOYING: {DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED},
    DeploymentStatus.DEPLOYED: {DeploymentStatus.DEPLOYING},
    DeploymentStatus.FAILED: {DeploymentStatus.DEPLOYING, DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.ROLLED_BACK: {DeploymentStatus.DEPLOYING},
}

TERMINAL_DEPLOYMENT_STATES = {
    DeploymentStatus.DEPLOYED,
    DeploymentStatus.FAILED,
    DeploymentStatus.ROLLED_BACK,
}

CONNECTION_TRANSITIONS = {
    ConnectionStatus.PENDING: {ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED},
    ConnectionStatus.CONNECTING: {
        ConnectionStatus.CONNECTED,
        ConnectionStatus.FAILED,
        ConnectionStatus.DISCONNECTED,
    },
    ConnectionStatus.CONNECTED: {ConnectionStatus.FAILED, ConnectionStatus.DISCONNECTED},
    ConnectionStatus.FAILED: {
        ConnectionStatus.CONNECTED,
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,
    },
    ConnectionStatus.DISCONNECTED: {ConnectionStatus.CONNECTING},
}


class Hub(Base):
    __tablename__ = "hubs"
    __table_args__ = (
        # Exact duplicates among active hubs are rejected by the database,
        # partial overlaps are caught by the topology validator.
        Index(
            "uq_active_hub_network",
            "network_cidr",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    hub_uuid = Column(String(36), unique=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), unique=True, index=True, nullable=False)
    description = Column(Text, nullable=True)
    hub_type = Column(String(20), nullable=False, index=True)

    # Addressing
    network_cidr = Column(String(43), nullable=False)   # VD: 10.42.0.0/24
    hub_ip = Column(String(39), nullable=False)         # first usable host
    listen_port = Column(Integer, nullable=False, default=51820)
    interface_name = Column(String(15), nullable=False, default="wg0")
    endpoint = Column(String(255), nullable=True)       # public host for peers

    # Remote execution target and type specific settings
    ssh_host = Column(String(255), nullable=True)
    egress_interface = Column(String(15), nullable=True)   # gateway NAT
    customer_id = Column(String(100), nullable=True, index=True)
    dns_servers = Column(JSON, nullable=True)

    # Keys (private key only ever stored encrypted)
    public_key = Column(String(64), nullable=True)
    private_key_encrypted = Column(Text, nullable=True)
    keys_generated_at = Column(DateTime, nullable=True)

    # Lifecycle
    status = Column(String(20), default=HubStatus.ACTIVE.value, index=True)
    deployment_status = Column(String(20), default=DeploymentStatus.PENDING.value)
    health_status = Column(String(20), default=HealthStatus.UNKNOWN.value)
    status_reason = Column(Text, nullable=True)
    config_checksum = Column(String(64), nullable=True)
    last_deployed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    spokes = relationship(
        "Spoke", back_populates="hub", cascade="all, delete-orphan", passive_deletes=True
    )
    connections = relationship(
        "Connection", back_populates="hub", cascade="all, delete-orphan", passive_deletes=True
    )
    policies = relationship(
        "Policy", back_populates="hub", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def type(self) -> HubType:
        return HubType(self.hub_type)

    @property
    def is_active(self) -> bool:
        return self.status == HubStatus.ACTIVE.value

    @property
    def active_spokes(self) -> list:
        return [s for s in self.spokes if s.status == SpokeStatus.ACTIVE.value]

    def transition_to(self, new_status: DeploymentStatus, reason: str = None) -> None:
        """Move the deployment state machine, rejecting illegal jumps"""
        current = DeploymentStatus(self.deployment_status or DeploymentStatus.PENDING.value)
        if new_status not in DEPLOYMENT_TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"Hub {self.name}: cannot go from {current.value} to {new_status.value}"
            )
        self.deployment_status = new_status.value
        self.status_reason = reason

    def __repr__(self) -> str:
        return f"<Hub {self.name} {self.hub_type} {self.network_cidr}>"


class Spoke(Base):
    __tablename__ = "spokes"
    __table_args__ = (
        UniqueConstraint("hub_id", "allocated_ip", name="uq_spoke_hub_ip"),
        UniqueConstraint("hub_id", "name", name="uq_spoke_hub_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    spoke_uuid = Column(String(36), unique=True, default=lambda: str(uuid.uuid4()))
    hub_id = Column(Integer, ForeignKey("hubs.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    allocated_ip = Column(String(39), nullable=False)
    device_type = Column(String(30), default="server")   # VD: server, laptop, mobile, router

    public_key = Column(String(64), nullable=False)
    private_key_encrypted = Column(Text, nullable=True)
    keys_generated_at = Column(DateTime, nullable=True)

    status = Column(String(20), default=SpokeStatus.ACTIVE.value)
    connection_status = Column(String(20), default=ConnectionStatus.PENDING.value)
    bandwidth_limit_mbps = Column(Integer, nullable=True)
    priority = Column(Integer, default=100)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    hub = relationship("Hub", back_populates="spokes")
    connections = relationship(
        "Connection", back_populates="spoke", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Spoke {self.name} {self.allocated_ip}>"


class Connection(Base):
    # Observed tunnel state, refreshed from `wg show dump`. Not configuration.
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("hub_id", "spoke_id", name="uq_connection_hub_spoke"),
    )

    id = Column(Integer, primary_key=True, index=True)
    hub_id = Column(Integer, ForeignKey("hubs.id", ondelete="CASCADE"), nullable=False, index=True)
    spoke_id = Column(Integer, ForeignKey("spokes.id", ondelete="CASCADE"), nullable=False, index=True)
    peer_public_key = Column(String(64), nullable=True)
    endpoint = Column(String(255), nullable=True)

    connection_status = Column(String(20), default=ConnectionStatus.PENDING.value)
    bytes_sent = Column(BigInteger, default=0)
    bytes_received = Column(BigInteger, default=0)
    last_handshake = Column(DateTime, nullable=True)
    latency_ms = Column(Float, nullable=True)
    last_seen = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    hub = relationship("Hub", back_populates="connections")
    spoke = relationship("Spoke", back_populates="connections")

    def transition_to(self, new_status: ConnectionStatus) -> None:
        current = ConnectionStatus(self.connection_status or ConnectionStatus.PENDING.value)
        if new_status == current:
            return
        if new_status not in CONNECTION_TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"Connection {self.id}: cannot go from {current.value} to {new_status.value}"
            )
        self.connection_status = new_status.value


class Policy(Base):
    __tablename__ = "policies"

    id = Column(Integer, primary_key=True, index=True)
    policy_uuid = Column(String(36), unique=True, default=lambda: str(uuid.uuid4()))
    hub_id = Column(Integer, ForeignKey("hubs.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    rule_type = Column(String(20), default=PolicyRuleType.FIREWALL.value)
    rule = Column(JSON, nullable=True)   # VD: {"action": "deny", "destination": "10.5.0.0/24"}
    status = Column(String(20), default="active")
    created_at = Column(DateTime, default=datetime.utcnow)

    hub = relationship("Hub", back_populates="policies")
