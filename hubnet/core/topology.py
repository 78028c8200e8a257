# hubnet/core/topology.py
"""
Topology Validator

Checks that run strictly before any remote mutation:
- CIDR overlap between a candidate network and active hubs
- Per hub type deployment prerequisites

Results are returned as values; callers that prefer exceptions use
ValidationResult.raise_for_issues().
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from ..exceptions import (
    CidrOverlapConflict,
    InvalidNetworkSpecification,
    MissingDeploymentPrerequisite,
)
from ..database.models import Hub, HubType
from .ipam import parse_any_network, parse_network

logger = logging.getLogger(__name__)

ISSUE_CIDR_OVERLAP = "cidr_overlap"
ISSUE_INVALID_NETWORK = "invalid_network"
ISSUE_MISSING_PREREQUISITE = "missing_prerequisite"


@dataclass(frozen=True)
class TopologyIssue:
    code: str
    message: str
    hub_ids: tuple = ()
    attribute: Optional[str] = None


@dataclass
class ValidationResult:
    issues: List[TopologyIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    @property
    def conflicting_hub_ids(self) -> List[int]:
        ids: List[int] = []
        for issue in self.issues:
            if issue.code == ISSUE_CIDR_OVERLAP:
                ids.extend(i for i in issue.hub_ids if i not in ids)
        return ids

    @property
    def missing_fields(self) -> List[str]:
        return [i.attribute for i in self.issues if i.code == ISSUE_MISSING_PREREQUISITE and i.attribute]

    def reasons(self) -> List[str]:
        return [issue.message for issue in self.issues]

    def extend(self, other: "ValidationResult") -> "ValidationResult":
        self.issues.extend(other.issues)
        return self

    def raise_for_issues(self) -> None:
        """Raise the most specific exception for the first kind of issue found"""
        if self.ok:
            return
        message = "; ".join(self.reasons())
        codes = {issue.code for issue in self.issues}
        if ISSUE_INVALID_NETWORK in codes:
            raise InvalidNetworkSpecification(message)
        if ISSUE_CIDR_OVERLAP in codes:
            raise CidrOverlapConflict(message, hub_ids=self.conflicting_hub_ids)
        raise MissingDeploymentPrerequisite(message, missing=self.missing_fields)


def networks_overlap(cidr1: str, cidr2: str) -> bool:
    """
    True if the two blocks share any address

    Equivalent to masking both network addresses with the wider block's
    mask, so 10.5.0.0/24 and 10.5.0.0/25 overlap.
    """
    net1 = parse_any_network(cidr1)
    net2 = parse_any_network(cidr2)
    wider = net1 if net1.prefixlen <= net2.prefixlen else net2
    mask = int(wider.netmask)
    return (int(net1.network_address) & mask) == (int(net2.network_address) & mask)


def validate_new_hub(
    candidate_cidr: str,
    existing_hubs: Iterable[Hub],
    exclude_id: Optional[int] = None,
) -> ValidationResult:
    """
    Check a candidate network against existing active hubs

    Args:
        candidate_cidr: network the new (or moved) hub wants
        existing_hubs: hubs to compare with; inactive ones are ignored
        exclude_id: hub id to skip (the hub being re-validated)
    """
    result = ValidationResult()
    try:
        parse_network(candidate_cidr)
    except InvalidNetworkSpecification as e:
        result.issues.append(TopologyIssue(code=ISSUE_INVALID_NETWORK, message=str(e), attribute="network_cidr"))
        return result

    conflicts = []
    for hub in existing_hubs:
        if exclude_id is not None and hub.id == exclude_id:
            continue
        if not hub.is_active:
            continue
        if networks_overlap(candidate_cidr, hub.network_cidr):
            conflicts.append(hub)

    if conflicts:
        names = ", ".join(f"{h.name} ({h.network_cidr})" for h in conflicts)
        result.issues.append(TopologyIssue(
            code=ISSUE_CIDR_OVERLAP,
            message=f"Network {candidate_cidr} overlaps {names}",
            hub_ids=tuple(h.id for h in conflicts),
            attribute="network_cidr",
        ))
        logger.warning(f"CIDR conflict for {candidate_cidr}: {names}")

    return result


def _missing(result: ValidationResult, hub: Hub, field_name: str, message: str) -> None:
    result.issues.append(TopologyIssue(
        code=ISSUE_MISSING_PREREQUISITE,
        message=f"Hub {hub.name}: {message}",
        attribute=field_name,
    ))


def check_deployment_prerequisites(hub: Hub) -> ValidationResult:
    """
    Per type requirements before a deploy may touch the remote host

    - every hub: execution target, keypair, active status, valid network
    - gateway: outbound interface for NAT
    - customer: customer (billing/isolation) identifier
    """
    result = ValidationResult()

    if not hub.ssh_host:
        _missing(result, hub, "ssh_host", "no SSH host configured")
    if not hub.public_key or not hub.private_key_encrypted:
        _missing(result, hub, "keypair", "missing cryptographic keys")
    if not hub.is_active:
        _missing(result, hub, "status", "hub is not active")

    try:
        network = parse_network(hub.network_cidr)
        if not hub.hub_ip or ipaddress.IPv4Address(hub.hub_ip) not in network:
            _missing(result, hub, "hub_ip", f"hub address {hub.hub_ip} is not inside {hub.network_cidr}")
    except (InvalidNetworkSpecification, ValueError) as e:
        result.issues.append(TopologyIssue(code=ISSUE_INVALID_NETWORK, message=str(e), attribute="network_cidr"))

    try:
        hub_type = HubType(hub.hub_type)
    except ValueError:
        _missing(result, hub, "hub_type", f"unknown hub type {hub.hub_type!r}")
        return result

    if hub_type == HubType.GATEWAY and not hub.egress_interface:
        _missing(result, hub, "egress_interface", "gateway needs an outbound interface for NAT")
    if hub_type == HubType.CUSTOMER and not hub.customer_id:
        _missing(result, hub, "customer_id", "customer hub needs a customer identifier")

    return result


def validate_for_deployment(hub: Hub, active_hubs: Iterable[Hub]) -> ValidationResult:
    """Prerequisites plus overlap against every other active hub"""
    result = check_deployment_prerequisites(hub)
    if hub.network_cidr and not any(i.code == ISSUE_INVALID_NETWORK for i in result.issues):
        result.extend(validate_new_hub(hub.network_cidr, active_hubs, exclude_id=hub.id))
    return result
