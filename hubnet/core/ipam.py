# hubnet/core/ipam.py
"""
IP Address Management

- Hub networks: one deterministic /24 per hub carved out of 10.0.0.0/8
- Spoke addresses: lowest free host inside the hub network, serialized
  per hub
"""

import hashlib
import ipaddress
import logging
import threading
import zlib
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional, Set

from sqlalchemy.orm import Session

from ..exceptions import AddressSpaceExhausted, InvalidNetworkSpecification
from ..database.models import Hub, Spoke

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_SPACE = "10.0.0.0/8"
HUB_PREFIX_LENGTH = 24
# Second octet values 1..254 (0 and 255 are never handed out)
SLOT_COUNT = 254


def parse_network(cidr: str) -> ipaddress.IPv4Network:
    """
    Parse a hub network

    Host bits must be zero and the block must fit the hub address plus at
    least one spoke.
    """
    if not isinstance(cidr, str) or "/" not in cidr:
        raise InvalidNetworkSpecification(f"Not a CIDR block: {cidr!r}")
    try:
        network = ipaddress.IPv4Network(cidr.strip(), strict=True)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as e:
        raise InvalidNetworkSpecification(f"Invalid network {cidr!r}: {e}") from e
    if network.prefixlen > 30:
        raise InvalidNetworkSpecification(
            f"Network {cidr} is too small for a hub and its spokes (max /30)"
        )
    return network


def first_host(cidr: str) -> str:
    """Hub address: first usable host of the block"""
    network = parse_network(cidr)
    return str(network.network_address + 1)


def derive_hub_network(identifier: str, space: str = DEFAULT_NETWORK_SPACE) -> str:
    """
    Deterministic /24 for an identifier: 10.<crc32 % 254 + 1>.0.0/24

    Pure derivation, does not look at existing hubs.
    """
    return str(_slot_network(_slot_for(identifier), _parse_space(space)))


def allocate_hub_network(
    identifier: str,
    active_cidrs: Iterable[str],
    space: str = DEFAULT_NETWORK_SPACE,
) -> str:
    """
    Allocate a /24 for a hub

    Starts at the derived slot and probes upward (wrapping) past any slot
    that overlaps an active hub network.

    Raises:
        AddressSpaceExhausted: all 254 slots overlap something
    """
    base = _parse_space(space)
    taken = [parse_any_network(c) for c in active_cidrs]
    start = _slot_for(identifier)

    for offset in range(SLOT_COUNT):
        slot = (start - 1 + offset) % SLOT_COUNT + 1
        candidate = _slot_network(slot, base)
        if not any(candidate.overlaps(t) for t in taken):
            if offset:
                logger.info(f"Network for {identifier!r} probed {offset} slot(s) to {candidate}")
            return str(candidate)

    raise AddressSpaceExhausted(f"No free /24 left in {space} for {identifier!r}")


def parse_any_network(cidr: str) -> ipaddress.IPv4Network:
    """Lenient parse used for networks already stored on hubs"""
    try:
        return ipaddress.IPv4Network(cidr, strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as e:
        raise InvalidNetworkSpecification(f"Invalid network {cidr!r}: {e}") from e


def _parse_space(space: str) -> ipaddress.IPv4Network:
    try:
        network = ipaddress.IPv4Network(space, strict=True)
    except ValueError as e:
        raise InvalidNetworkSpecification(f"Invalid network space {space!r}: {e}") from e
    if network.prefixlen != 8:
        raise InvalidNetworkSpecification(f"Network space must be a /8, got {space}")
    return network


def _slot_for(identifier: str) -> int:
    if not identifier:
        raise InvalidNetworkSpecification("Network identifier must not be empty")
    return zlib.crc32(identifier.encode("utf-8")) % SLOT_COUNT + 1


def _slot_network(slot: int, base: ipaddress.IPv4Network) -> ipaddress.IPv4Network:
    address = base.network_address + (slot << 16)
    return ipaddress.IPv4Network(f"{address}/{HUB_PREFIX_LENGTH}")


def next_free_ip(cidr: str, hub_ip: str, used: Iterable[str]) -> str:
    """
    Lowest host address in `cidr` that is neither the hub nor used

    Raises:
        AddressSpaceExhausted: every host is taken
    """
    network = parse_network(cidr)
    reserved: Set[ipaddress.IPv4Address] = {ipaddress.IPv4Address(hub_ip)}
    reserved.update(ipaddress.IPv4Address(ip.split("/")[0]) for ip in used)

    for host in network.hosts():
        if host not in reserved:
            return str(host)

    raise AddressSpaceExhausted(f"No free address left in {cidr}")


def allocate_listen_port(used: Iterable[int], start: int = 52000, end: int = 53000) -> int:
    """First UDP port in [start, end) not used by another hub"""
    used_ports = set(used)
    for port in range(start, end):
        if port not in used_ports:
            return port
    raise AddressSpaceExhausted(f"No free listen port in range {start}-{end}")


def interface_name_for(identifier: str) -> str:
    """Stable interface name, fits the 15 char Linux limit"""
    return "wg-" + hashlib.md5(identifier.encode("utf-8")).hexdigest()[:8]


class SpokeAddressAllocator:
    """
    Hands out spoke addresses, one critical section per hub

    Usage:
        with allocator.hub_lock(hub.id):
            ip = allocator.allocate(db, hub)
            db.add(Spoke(..., allocated_ip=ip))
            db.commit()
    """

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, hub_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(hub_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[hub_id] = lock
            return lock

    @contextmanager
    def hub_lock(self, hub_id: int) -> Iterator[None]:
        lock = self._lock_for(hub_id)
        with lock:
            yield

    def used_addresses(self, db: Session, hub: Hub) -> Set[str]:
        # Inactive spokes keep their row (and its unique address) until deleted
        rows = db.query(Spoke.allocated_ip).filter(Spoke.hub_id == hub.id).all()
        return {row[0] for row in rows}

    def allocate(self, db: Session, hub: Hub, requested: Optional[str] = None) -> str:
        """
        Pick an address for a new spoke on `hub`

        Args:
            requested: explicit address; must be inside the hub network and free
        """
        used = self.used_addresses(db, hub)

        if requested:
            network = parse_network(hub.network_cidr)
            try:
                address = ipaddress.IPv4Address(requested.split("/")[0])
            except ValueError as e:
                raise InvalidNetworkSpecification(f"Invalid spoke address {requested!r}") from e
            if address not in network or address in (network.network_address, network.broadcast_address):
                raise InvalidNetworkSpecification(f"{address} is not a host of {hub.network_cidr}")
            if str(address) == hub.hub_ip or str(address) in used:
                raise InvalidNetworkSpecification(f"{address} is already in use on hub {hub.name}")
            return str(address)

        ip = next_free_ip(hub.network_cidr, hub.hub_ip, used)
        logger.debug(f"Allocated {ip} on hub {hub.name}")
        return ip
