# tests/test_ipam.py
"""
Unit Tests for address management
"""

import zlib

import pytest

from hubnet.core.ipam import (
    SpokeAddressAllocator,
    allocate_hub_network,
    allocate_listen_port,
    derive_hub_network,
    first_host,
    interface_name_for,
    next_free_ip,
    parse_network,
)
from hubnet.database.models import HubType, Spoke, SpokeStatus
from hubnet.exceptions import AddressSpaceExhausted, InvalidNetworkSpecification


def expected_slot(identifier: str) -> int:
    return zlib.crc32(identifier.encode()) % 254 + 1


class TestHubNetworkDerivation:
    """Tests for derive_hub_network / allocate_hub_network"""

    def test_acme_is_stable(self):
        """Test same customer id gives the same network across runs"""
        first = allocate_hub_network("acme", [])
        second = allocate_hub_network("acme", [])

        assert first == second
        assert first == f"10.{expected_slot('acme')}.0.0/24"

    def test_derivation_matches_allocation_without_collisions(self):
        assert derive_hub_network("tenant-7") == allocate_hub_network("tenant-7", [])

    def test_probes_upward_past_taken_slot(self):
        """Test collision with an active hub moves to the next slot"""
        slot = expected_slot("acme")
        taken = f"10.{slot}.0.0/24"

        network = allocate_hub_network("acme", [taken])

        assert network == f"10.{slot % 254 + 1}.0.0/24"

    def test_probe_skips_partially_overlapping_block(self):
        """Test a /25 inside the derived /24 also counts as taken"""
        slot = expected_slot("acme")

        network = allocate_hub_network("acme", [f"10.{slot}.0.128/25"])

        assert network != f"10.{slot}.0.0/24"

    def test_probe_wraps_around(self):
        """Test probing wraps from 254 back to 1"""
        taken = [f"10.{i}.0.0/24" for i in range(1, 255) if i != 1]
        # Every slot but 1 is taken, wherever the identifier starts
        assert allocate_hub_network("acme", taken) == "10.1.0.0/24"

    def test_all_slots_taken(self):
        """Test exhaustion of all 254 networks"""
        taken = [f"10.{i}.0.0/24" for i in range(1, 255)]

        with pytest.raises(AddressSpaceExhausted):
            allocate_hub_network("acme", taken)

    def test_whole_space_blocked_by_supernet(self):
        with pytest.raises(AddressSpaceExhausted):
            allocate_hub_network("acme", ["10.0.0.0/8"])

    def test_space_must_be_slash_8(self):
        with pytest.raises(InvalidNetworkSpecification):
            allocate_hub_network("acme", [], space="10.0.0.0/16")

    def test_empty_identifier(self):
        with pytest.raises(InvalidNetworkSpecification):
            derive_hub_network("")


class TestParseNetwork:
    """Tests for parse_network"""

    @pytest.mark.parametrize("cidr", ["10.0.0.1/24", "10.0.0.0", "300.1.1.0/24", "garbage", "10.0.0.0/33"])
    def test_rejects_malformed(self, cidr):
        with pytest.raises(InvalidNetworkSpecification):
            parse_network(cidr)

    def test_rejects_too_small(self):
        """Test a /31 cannot hold a hub and a spoke"""
        with pytest.raises(InvalidNetworkSpecification):
            parse_network("10.0.0.0/31")

    def test_first_host(self):
        assert first_host("10.42.0.0/24") == "10.42.0.1"


class TestNextFreeIp:
    """Tests for next_free_ip"""

    def test_skips_hub_address(self):
        assert next_free_ip("10.5.0.0/24", "10.5.0.1", []) == "10.5.0.2"

    def test_lowest_gap_is_reused(self):
        """Test allocation returns the lowest free host, not the highest + 1"""
        assert next_free_ip("10.5.0.0/24", "10.5.0.1", ["10.5.0.2", "10.5.0.4"]) == "10.5.0.3"

    def test_exhausted(self):
        """Test a full /30 (hub + one spoke)"""
        with pytest.raises(AddressSpaceExhausted):
            next_free_ip("10.5.0.0/30", "10.5.0.1", ["10.5.0.2"])


class TestSupplementalAllocation:
    """Tests for listen port and interface name helpers"""

    def test_listen_port_first_free(self):
        assert allocate_listen_port([52000, 52001], 52000, 53000) == 52002

    def test_listen_port_exhausted(self):
        with pytest.raises(AddressSpaceExhausted):
            allocate_listen_port([52000, 52001], 52000, 52002)

    def test_interface_name(self):
        name = interface_name_for("acme")

        assert name.startswith("wg-")
        assert len(name) == 11
        assert name == interface_name_for("acme")
        assert len(name) <= 15


class TestSpokeAddressAllocator:
    """Tests for SpokeAddressAllocator against the database"""

    def test_allocates_after_existing_spokes(self, db, make_hub):
        hub = make_hub("ws-1", HubType.WORKSTATION, network_cidr="10.20.0.0/24")
        db.add(Spoke(hub_id=hub.id, name="a", allocated_ip="10.20.0.2", public_key="k" * 44))
        db.commit()

        assert SpokeAddressAllocator().allocate(db, hub) == "10.20.0.3"

    def test_inactive_spoke_keeps_its_address(self, db, make_hub):
        """Test an inactive spoke row still blocks its address (unique per hub)"""
        hub = make_hub("ws-1", HubType.WORKSTATION, network_cidr="10.20.0.0/24")
        db.add(Spoke(
            hub_id=hub.id, name="old", allocated_ip="10.20.0.2",
            public_key="k" * 44, status=SpokeStatus.INACTIVE.value,
        ))
        db.commit()

        assert SpokeAddressAllocator().allocate(db, hub) == "10.20.0.3"

    def test_requested_address(self, db, make_hub):
        hub = make_hub("ws-1", HubType.WORKSTATION, network_cidr="10.20.0.0/24")

        assert SpokeAddressAllocator().allocate(db, hub, "10.20.0.50") == "10.20.0.50"

    @pytest.mark.parametrize("requested", ["10.21.0.5", "10.20.0.1", "10.20.0.255", "10.20.0.0", "nope"])
    def test_requested_address_rejected(self, db, make_hub, requested):
        """Test outside network, hub address, broadcast, network and garbage"""
        hub = make_hub("ws-1", HubType.WORKSTATION, network_cidr="10.20.0.0/24")

        with pytest.raises(InvalidNetworkSpecification):
            SpokeAddressAllocator().allocate(db, hub, requested)

    def test_locks_are_per_hub(self):
        """Test different hubs never share a lock"""
        allocator = SpokeAddressAllocator()

        with allocator.hub_lock(1):
            # Would deadlock if hub 2 shared hub 1's lock
            with allocator.hub_lock(2):
                pass

        assert allocator._lock_for(1) is allocator._lock_for(1)
        assert allocator._lock_for(1) is not allocator._lock_for(2)
