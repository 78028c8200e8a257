"""
Persistence layer

SQLAlchemy models for hubs, spokes, connections and policies plus the
session factory.
"""

from .models import (
    Base,
    Connection,
    ConnectionStatus,
    DeploymentStatus,
    HealthStatus,
    Hub,
    HubStatus,
    HubType,
    Policy,
    PolicyRuleType,
    Spoke,
    SpokeStatus,
)

__all__ = [
    "Base",
    "Connection",
    "ConnectionStatus",
    "DeploymentStatus",
    "HealthStatus",
    "Hub",
    "HubStatus",
    "HubType",
    "Policy",
    "PolicyRuleType",
    "Spoke",
    "SpokeStatus",
]
