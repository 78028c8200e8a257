# hubnet/core/domain_events.py
"""
Domain Events - Things that happened to the hub/spoke topology

Payloads never carry private key material.
"""

import logging
from typing import Any, Dict, List, Optional

from .events import Event, EventBus, EventPriority

audit_logger = logging.getLogger("hubnet.audit")


class EventTypes:
    """All domain event type constants"""

    # Topology
    HUB_CREATED = "HubCreated"
    HUB_DELETED = "HubDeleted"
    SPOKE_CREATED = "SpokeCreated"
    SPOKE_DELETED = "SpokeDeleted"
    POLICY_CREATED = "PolicyCreated"
    KEYS_ROTATED = "KeysRotated"

    # Deployment
    DEPLOYMENT_STARTED = "DeploymentStarted"
    DEPLOYMENT_SUCCEEDED = "DeploymentSucceeded"
    DEPLOYMENT_FAILED = "DeploymentFailed"
    ROLLBACK_PERFORMED = "RollbackPerformed"
    ROLLBACK_FAILED = "RollbackFailed"
    TOPOLOGY_DEPLOYED = "TopologyDeployed"

    # Monitoring
    CONNECTION_STATUS_CHANGED = "ConnectionStatusChanged"


# =============================================================================
# Event Payload Builders
# =============================================================================

def hub_payload(
    hub_id: int,
    name: str,
    hub_type: str,
    network_cidr: str,
    public_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Build payload for hub lifecycle events"""
    return {
        "hub_id": hub_id,
        "name": name,
        "hub_type": hub_type,
        "network_cidr": network_cidr,
        "public_key": public_key,
    }


def spoke_payload(
    spoke_id: int,
    hub_id: int,
    name: str,
    allocated_ip: str,
) -> Dict[str, Any]:
    """Build payload for spoke lifecycle events"""
    return {
        "spoke_id": spoke_id,
        "hub_id": hub_id,
        "name": name,
        "allocated_ip": allocated_ip,
    }


def keys_rotated_payload(
    entity: str,   # "hub" or "spoke"
    entity_id: int,
    name: str,
    new_public_key: str,
    affected_hubs: Optional[List[int]] = None,
) -> Dict[str, Any]:
    return {
        "entity": entity,
        "entity_id": entity_id,
        "name": name,
        "new_public_key": new_public_key,
        "affected_hubs": affected_hubs or [],
    }


def deployment_payload(
    hub_id: int,
    name: str,
    status: str,
    reason: Optional[str] = None,
    checksum: Optional[str] = None,
) -> Dict[str, Any]:
    """Build payload for deployment and rollback events"""
    return {
        "hub_id": hub_id,
        "name": name,
        "status": status,
        "reason": reason,
        "checksum": checksum,
    }


def topology_deployed_payload(outcomes: Dict[str, str], cancelled: bool) -> Dict[str, Any]:
    return {
        "outcomes": outcomes,
        "cancelled": cancelled,
        "succeeded": sum(1 for s in outcomes.values() if s == "deployed"),
        "total": len(outcomes),
    }


def emit(bus: Optional[EventBus], event_type: str, payload: Dict[str, Any], source: str) -> Optional[Event]:
    """Publish synchronously if a bus is configured"""
    if bus is None:
        return None
    event = Event(event_type=event_type, payload=payload, source=source)
    bus.publish(event)
    return event


async def emit_async(bus: Optional[EventBus], event_type: str, payload: Dict[str, Any], source: str) -> Optional[Event]:
    if bus is None:
        return None
    event = Event(event_type=event_type, payload=payload, source=source)
    await bus.publish_async(event)
    return event


# =============================================================================
# Audit
# =============================================================================

def audit_handler(event: Event) -> None:
    """Write every domain event to the audit log"""
    level = logging.WARNING if event.event_type in (
        EventTypes.DEPLOYMENT_FAILED,
        EventTypes.ROLLBACK_FAILED,
    ) else logging.INFO
    audit_logger.log(level, f"{event.event_type} from {event.source}: {event.payload}")


def register_audit_handler(bus: EventBus) -> None:
    bus.subscribe("*", audit_handler, priority=EventPriority.LOW)
