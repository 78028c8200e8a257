# hubnet/core/config_generator.py
"""
WireGuard Configuration Generator

Renders wg-quick configuration text for hubs and spokes.

Rendering is pure: no network calls, no clock, no randomness. The same
hub, spoke set and options always give byte-identical output, which is what
drift detection (config_checksum) and backup diffing rely on.

Layout of a hub config:
    # header
    [Interface]           private key, address, listen port
    <type directives>     PostUp/PostDown and declarations per hub type
    [Peer] ...            other hubs (workstation/logging/customer mgmt)
    [Peer] ...            one per active spoke
"""

import hashlib
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..database.models import Hub, HubType, Spoke, SpokeStatus
from ..exceptions import InvalidNetworkSpecification, MissingDeploymentPrerequisite, UnsafeConfigValue
from .ipam import parse_network

logger = logging.getLogger(__name__)

PERSISTENT_KEEPALIVE = 25
FULL_TUNNEL = "0.0.0.0/0"

# Directive values and PostUp arguments
_TOKEN = re.compile(r"[A-Za-z0-9_.@:-]+")


@dataclass(frozen=True)
class HubPeer:
    """Another hub as seen from the hub being rendered"""
    name: str
    hub_type: HubType
    public_key: str
    network_cidr: str
    endpoint: Optional[str] = None
    listen_port: Optional[int] = None

    @classmethod
    def from_hub(cls, hub: Hub) -> "HubPeer":
        return cls(
            name=hub.name,
            hub_type=HubType(hub.hub_type),
            public_key=hub.public_key,
            network_cidr=hub.network_cidr,
            endpoint=hub.endpoint,
            listen_port=hub.listen_port,
        )

    @property
    def endpoint_address(self) -> Optional[str]:
        if not self.endpoint:
            return None
        if self.listen_port:
            return f"{self.endpoint}:{self.listen_port}"
        return self.endpoint


@dataclass(frozen=True)
class HubTypeOptions:
    """
    Topology derived inputs for the per type augmentation

    Only the fields relevant to the hub's type are read.
    """
    peer_hubs: Tuple[HubPeer, ...] = ()
    egress_interface: Optional[str] = None
    log_port: int = 5514
    retention_days: int = 90
    blocked_cidrs: Tuple[str, ...] = ()
    management_hub: Optional[HubPeer] = None


@dataclass
class _TypeSection:
    interface_lines: List[str] = field(default_factory=list)
    hub_peers: List[HubPeer] = field(default_factory=list)
    full_tunnel_spokes: bool = False


def _token(value: str, what: str) -> str:
    if not _TOKEN.fullmatch(value):
        raise UnsafeConfigValue(f"{what} {value!r} cannot be written to a WireGuard config")
    return value


def _comment(value: str, what: str) -> str:
    if any(not c.isprintable() for c in value):
        raise UnsafeConfigValue(f"{what} {value!r} contains a line break or control character")
    return value


def _peer_sort_key(peer: HubPeer):
    return (list(HubType).index(peer.hub_type), peer.name)


def _is_active_spoke(spoke: Spoke) -> bool:
    # Transient rows have no status until flushed
    return spoke.status in (None, SpokeStatus.ACTIVE.value)


def _spoke_sort_key(spoke: Spoke):
    return (ipaddress.IPv4Address(spoke.allocated_ip.split("/")[0]), spoke.name)


def build_hub_options(
    hub: Hub,
    active_hubs: Iterable[Hub],
    log_port: int = 5514,
    retention_days: int = 90,
) -> HubTypeOptions:
    """
    Derive the type options for `hub` from the active topology

    Hubs without a public key cannot be peered yet and are skipped.
    """
    others: List[Hub] = []
    for other in active_hubs:
        if other.id == hub.id or not other.is_active:
            continue
        if not other.public_key:
            logger.warning(f"Skipping hub {other.name} as peer of {hub.name}: no public key yet")
            continue
        others.append(other)

    hub_type = HubType(hub.hub_type)
    peers = tuple(sorted((HubPeer.from_hub(o) for o in others), key=_peer_sort_key))

    if hub_type in (HubType.WORKSTATION, HubType.LOGGING):
        return HubTypeOptions(peer_hubs=peers, log_port=log_port, retention_days=retention_days)

    if hub_type == HubType.GATEWAY:
        return HubTypeOptions(egress_interface=hub.egress_interface)

    blocked = tuple(sorted(
        o.network_cidr for o in others if o.hub_type == HubType.CUSTOMER.value
    ))
    management = next((p for p in peers if p.hub_type == HubType.WORKSTATION), None)
    return HubTypeOptions(blocked_cidrs=blocked, management_hub=management)


# =============================================================================
# Per type augmentation
# =============================================================================

def _forwarding_rules(up: List[str], down: List[str]) -> None:
    up.append("sysctl -w net.ipv4.ip_forward=1")
    for rule in ("FORWARD -i %i -j ACCEPT", "FORWARD -o %i -j ACCEPT"):
        up.append(f"iptables -A {rule}")
        down.append(f"iptables -D {rule}")


def _directives(up: Sequence[str], down: Sequence[str]) -> List[str]:
    return [f"PostUp = {cmd}" for cmd in up] + [f"PostDown = {cmd}" for cmd in down]


def _workstation(hub: Hub, spokes: List[Spoke], options: HubTypeOptions) -> _TypeSection:
    up: List[str] = []
    down: List[str] = []
    _forwarding_rules(up, down)
    return _TypeSection(
        interface_lines=["# Role: central management"] + _directives(up, down),
        hub_peers=list(options.peer_hubs),
    )


def _logging(hub: Hub, spokes: List[Spoke], options: HubTypeOptions) -> _TypeSection:
    lines = [
        "# Role: log aggregation",
        f"# LogIngestPort = {options.log_port}",
        f"# LogRetentionDays = {options.retention_days}",
    ]
    up: List[str] = []
    down: List[str] = []
    for proto in ("udp", "tcp"):
        rule = f"INPUT -i %i -p {proto} --dport {options.log_port} -j ACCEPT"
        up.append(f"iptables -A {rule}")
        down.append(f"iptables -D {rule}")
    for peer in options.peer_hubs:
        rule = f"INPUT -i %i -s {peer.network_cidr} -j ACCEPT"
        up.append(f"iptables -A {rule}")
        down.append(f"iptables -D {rule}")
    return _TypeSection(
        interface_lines=lines + _directives(up, down),
        hub_peers=list(options.peer_hubs),
    )


def _gateway(hub: Hub, spokes: List[Spoke], options: HubTypeOptions) -> _TypeSection:
    egress = options.egress_interface
    if not egress:
        raise MissingDeploymentPrerequisite(
            f"Gateway hub {hub.name} has no egress interface", missing=["egress_interface"]
        )
    _token(egress, "Egress interface")
    up: List[str] = []
    down: List[str] = []
    _forwarding_rules(up, down)
    nat = f"POSTROUTING -s {hub.network_cidr} -o {egress} -j MASQUERADE"
    up.append(f"iptables -t nat -A {nat}")
    down.append(f"iptables -t nat -D {nat}")
    return _TypeSection(
        interface_lines=["# Role: internet gateway", f"# Egress = {egress}"] + _directives(up, down),
        full_tunnel_spokes=True,
    )


def _customer(hub: Hub, spokes: List[Spoke], options: HubTypeOptions) -> _TypeSection:
    if not hub.customer_id:
        raise MissingDeploymentPrerequisite(
            f"Customer hub {hub.name} has no customer id", missing=["customer_id"]
        )
    network = parse_network(hub.network_cidr)
    for spoke in spokes:
        if ipaddress.IPv4Address(spoke.allocated_ip.split("/")[0]) not in network:
            raise InvalidNetworkSpecification(
                f"Spoke {spoke.name} ({spoke.allocated_ip}) is outside customer network {hub.network_cidr}"
            )

    lines = [
        "# Role: customer network",
        "# Isolation = enabled",
        f"# Customer = {_token(hub.customer_id, 'Customer id')}",
    ]
    up: List[str] = []
    down: List[str] = []
    for cidr in options.blocked_cidrs:
        rule = f"FORWARD -i %i -d {cidr} -j DROP"
        up.append(f"iptables -I {rule}")
        down.append(f"iptables -D {rule}")

    peers = [options.management_hub] if options.management_hub else []
    return _TypeSection(interface_lines=lines + _directives(up, down), hub_peers=peers)


_TYPE_RENDERERS: Dict[HubType, Callable[[Hub, List[Spoke], HubTypeOptions], _TypeSection]] = {
    HubType.WORKSTATION: _workstation,
    HubType.LOGGING: _logging,
    HubType.GATEWAY: _gateway,
    HubType.CUSTOMER: _customer,
}

_unhandled = set(HubType) - set(_TYPE_RENDERERS)
if _unhandled:
    raise RuntimeError(f"No config renderer for hub type(s): {sorted(t.value for t in _unhandled)}")


# =============================================================================
# Rendering
# =============================================================================

def _hub_peer_lines(peer: HubPeer) -> List[str]:
    lines = [
        "",
        f"# hub: {_comment(peer.name, 'Hub name')} ({peer.hub_type.value})",
        "[Peer]",
        f"PublicKey = {peer.public_key}",
        f"AllowedIPs = {peer.network_cidr}",
    ]
    if peer.endpoint_address:
        lines.append(f"Endpoint = {_token(peer.endpoint_address, 'Endpoint')}")
    lines.append(f"PersistentKeepalive = {PERSISTENT_KEEPALIVE}")
    return lines


def _spoke_peer_lines(spoke: Spoke, full_tunnel: bool) -> List[str]:
    allowed = FULL_TUNNEL if full_tunnel else f"{spoke.allocated_ip.split('/')[0]}/32"
    return [
        "",
        f"# spoke: {_comment(spoke.name, 'Spoke name')}",
        "[Peer]",
        f"PublicKey = {spoke.public_key}",
        f"AllowedIPs = {allowed}",
        f"PersistentKeepalive = {PERSISTENT_KEEPALIVE}",
    ]


def render_hub_config(hub: Hub, spokes: Iterable[Spoke], options: HubTypeOptions, secrets) -> str:
    """
    Render the wg-quick config of a hub

    Args:
        hub: hub to render
        spokes: candidate spokes; inactive ones are dropped
        options: see build_hub_options()
        secrets: SecretBox used to decrypt the hub private key

    Raises:
        InvalidNetworkSpecification: bad hub network or a customer spoke
            outside the customer network
        MissingDeploymentPrerequisite: gateway without egress interface
        KeyMaterialError: private key cannot be decrypted
    """
    hub_type = HubType(hub.hub_type)
    network = parse_network(hub.network_cidr)
    active = sorted((s for s in spokes if _is_active_spoke(s)), key=_spoke_sort_key)

    section = _TYPE_RENDERERS[hub_type](hub, active, options)
    private_key = secrets.decrypt(hub.private_key_encrypted, purpose=f"render config of hub {hub.name}")

    lines = [
        f"# {_comment(hub.name, 'Hub name')} ({hub_type.value} hub) - managed by hubnet, do not edit",
        "[Interface]",
        f"PrivateKey = {private_key}",
        f"Address = {hub.hub_ip}/{network.prefixlen}",
        f"ListenPort = {hub.listen_port}",
    ]
    lines.extend(section.interface_lines)

    for peer in sorted(section.hub_peers, key=_peer_sort_key):
        lines.extend(_hub_peer_lines(peer))
    for spoke in active:
        lines.extend(_spoke_peer_lines(spoke, section.full_tunnel_spokes))

    return "\n".join(lines) + "\n"


def render_spoke_config(
    spoke: Spoke,
    hub: Hub,
    secrets,
    dns_servers: Optional[Sequence[str]] = None,
) -> str:
    """
    Client side config for a spoke

    Gateway spokes route everything through the hub, other spokes only the
    hub network.
    """
    private_key = secrets.decrypt(spoke.private_key_encrypted, purpose=f"render config of spoke {spoke.name}")
    allowed = FULL_TUNNEL if hub.hub_type == HubType.GATEWAY.value else hub.network_cidr

    lines = [
        f"# {_comment(spoke.name, 'Spoke name')} -> {_comment(hub.name, 'Hub name')}",
        "[Interface]",
        f"PrivateKey = {private_key}",
        f"Address = {spoke.allocated_ip.split('/')[0]}/32",
    ]
    if dns_servers:
        lines.append(f"DNS = {', '.join(_token(s, 'DNS server') for s in dns_servers)}")

    lines += [
        "",
        "[Peer]",
        f"PublicKey = {hub.public_key}",
        f"AllowedIPs = {allowed}",
    ]
    if hub.endpoint:
        lines.append(f"Endpoint = {_token(hub.endpoint, 'Endpoint')}:{hub.listen_port}")
    lines.append(f"PersistentKeepalive = {PERSISTENT_KEEPALIVE}")

    return "\n".join(lines) + "\n"


def config_checksum(config: str) -> str:
    """sha256 of rendered config text"""
    return hashlib.sha256(config.encode("utf-8")).hexdigest()
