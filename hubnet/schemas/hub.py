# hubnet/schemas/hub.py
"""
Pydantic Schemas for hubs, spokes, policies and deployments
"""

import ipaddress
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..database.models import HubType

# Values below end up in wg-quick config lines or PostUp shell commands
IDENTIFIER_PATTERN = r"^[A-Za-z0-9_.-]+$"
INTERFACE_PATTERN = r"^[A-Za-z0-9_.@-]{1,15}$"
HOSTNAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9.-]*$"
SSH_HOST_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_.@-]*$"


def _no_whitespace(v: str) -> str:
    if any(c.isspace() or not c.isprintable() for c in v):
        raise ValueError("name must not contain whitespace or control characters")
    return v


# =============================================================================
# Hub Schemas
# =============================================================================

class HubCreate(BaseModel):
    """Schema for creating a hub"""
    name: str = Field(..., min_length=1, max_length=100, description="Unique hub name")
    hub_type: HubType = Field(..., description="workstation, logging, gateway or customer")
    description: Optional[str] = None
    network_cidr: Optional[str] = Field(
        None, description="Explicit network; derived from customer_id or name when omitted"
    )
    listen_port: Optional[int] = Field(None, ge=1, le=65535)
    endpoint: Optional[str] = Field(
        None, max_length=255, pattern=HOSTNAME_PATTERN, description="Public host or IPv4 address peers connect to"
    )
    ssh_host: Optional[str] = Field(
        None, max_length=255, pattern=SSH_HOST_PATTERN, description="Remote execution target, [user@]host"
    )
    egress_interface: Optional[str] = Field(None, pattern=INTERFACE_PATTERN, description="Gateway NAT interface")
    customer_id: Optional[str] = Field(
        None, max_length=100, pattern=IDENTIFIER_PATTERN, description="Customer isolation id"
    )
    dns_servers: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def name_has_no_whitespace(cls, v: str) -> str:
        return _no_whitespace(v)

    @field_validator("dns_servers")
    @classmethod
    def dns_servers_are_addresses(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        for server in v:
            try:
                ipaddress.ip_address(server)
            except ValueError:
                raise ValueError(f"DNS server {server!r} is not an IP address")
        return v


class HubResponse(BaseModel):
    """Schema for hub response (never carries private key material)"""
    id: int
    hub_uuid: str
    name: str
    hub_type: str
    description: Optional[str] = None
    network_cidr: str
    hub_ip: str
    listen_port: int
    interface_name: str
    endpoint: Optional[str] = None
    ssh_host: Optional[str] = None
    egress_interface: Optional[str] = None
    customer_id: Optional[str] = None
    public_key: Optional[str] = None
    status: str
    deployment_status: str
    health_status: str
    status_reason: Optional[str] = None
    config_checksum: Optional[str] = None
    keys_generated_at: Optional[datetime] = None
    last_deployed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class HubListResponse(BaseModel):
    hubs: List[HubResponse]
    total: int


class TopologyTier(BaseModel):
    hub_type: str
    hubs: List[HubResponse]


class TopologyResponse(BaseModel):
    tiers: List[TopologyTier]


# =============================================================================
# Spoke Schemas
# =============================================================================

class SpokeCreate(BaseModel):
    """Schema for attaching a spoke to a hub"""
    name: str = Field(..., min_length=1, max_length=100)
    device_type: str = Field("server", pattern="^(server|laptop|mobile|router|desktop)$")
    public_key: Optional[str] = Field(
        None, description="Bring your own key; no client config is kept in that case"
    )
    allocated_ip: Optional[str] = Field(None, description="Explicit address inside the hub network")
    bandwidth_limit_mbps: Optional[int] = Field(None, ge=1)
    priority: int = Field(100, ge=0, le=1000)

    @field_validator("name")
    @classmethod
    def name_has_no_whitespace(cls, v: str) -> str:
        return _no_whitespace(v)


class SpokeResponse(BaseModel):
    id: int
    spoke_uuid: str
    hub_id: int
    name: str
    allocated_ip: str
    device_type: str
    public_key: str
    status: str
    connection_status: str
    bandwidth_limit_mbps: Optional[int] = None
    priority: int
    created_at: datetime

    class Config:
        from_attributes = True


class SpokeListResponse(BaseModel):
    spokes: List[SpokeResponse]
    total: int


# =============================================================================
# Policy Schemas
# =============================================================================

class PolicyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    rule_type: str = Field("firewall", pattern="^(isolation|bandwidth|access|firewall)$")
    rule: Optional[Dict[str, Any]] = None


class PolicyResponse(BaseModel):
    id: int
    policy_uuid: str
    hub_id: int
    name: str
    rule_type: str
    rule: Optional[Dict[str, Any]] = None
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


# =============================================================================
# Deployment Schemas
# =============================================================================

class HubDeploymentResponse(BaseModel):
    hub_id: int
    hub_name: str
    hub_type: str
    status: str
    reason: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    needs_manual_intervention: bool = False
    checksum: Optional[str] = None


class TopologyDeployRequest(BaseModel):
    hub_ids: Optional[List[int]] = Field(None, description="Restrict the run to these hubs")


class TopologyDeploymentResponse(BaseModel):
    results: List[HubDeploymentResponse]
    cancelled: bool = False
    succeeded: int
    total: int


class HubStatusResponse(BaseModel):
    hub_id: int
    hub_name: str
    deployment_status: str
    health_status: str
    status_reason: Optional[str] = None
    interface_up: bool
    listening: bool
    listen_port: Optional[int] = None
    carries_address: bool
    peer_count: int
    latest_handshake: Optional[datetime] = None
    errors: List[str] = []
    sync_issues: List[str] = []
