# tests/test_topology.py
"""
Unit Tests for the topology validator
"""

import ipaddress
import random

import pytest

from hubnet.core.topology import (
    ISSUE_CIDR_OVERLAP,
    check_deployment_prerequisites,
    networks_overlap,
    validate_for_deployment,
    validate_new_hub,
)
from hubnet.database.models import Hub, HubStatus, HubType
from hubnet.exceptions import (
    CidrOverlapConflict,
    InvalidNetworkSpecification,
    MissingDeploymentPrerequisite,
)


def build_hub(hub_id, name, cidr, hub_type=HubType.WORKSTATION, **kwargs):
    """Transient hub (defaults are not applied until insert)"""
    fields = {
        "id": hub_id,
        "name": name,
        "hub_type": hub_type.value,
        "network_cidr": cidr,
        "hub_ip": cidr.split("/")[0][:-1] + "1",
        "status": HubStatus.ACTIVE.value,
        "ssh_host": f"{name}.example.net",
        "public_key": "pub",
        "private_key_encrypted": "token",
    }
    fields.update(kwargs)
    return Hub(**fields)


class TestNetworksOverlap:
    """Tests for networks_overlap"""

    @pytest.mark.parametrize("a,b,expected", [
        ("10.5.0.0/24", "10.5.0.0/25", True),
        ("10.5.0.0/24", "10.5.0.128/25", True),
        ("10.5.0.0/16", "10.5.7.0/24", True),
        ("10.5.0.0/24", "10.6.0.0/24", False),
        ("10.5.0.0/25", "10.5.0.128/25", False),
    ])
    def test_overlap(self, a, b, expected):
        assert networks_overlap(a, b) is expected
        assert networks_overlap(b, a) is expected


class TestOverlapProperties:
    """Randomized overlap checks against ipaddress, with a fixed seed"""

    SEED = 20240501

    @staticmethod
    def random_network(rng, min_prefix=8, max_prefix=30):
        prefix = rng.randint(min_prefix, max_prefix)
        return ipaddress.IPv4Network((rng.getrandbits(32), prefix), strict=False)

    def overlapping_network(self, rng, network):
        """Random sub or super block sharing addresses with `network`"""
        inside = int(network.network_address) + rng.randrange(network.num_addresses)
        return ipaddress.IPv4Network((inside, rng.randint(8, 30)), strict=False)

    def test_matches_ipaddress(self):
        rng = random.Random(self.SEED)
        for _ in range(5000):
            a = self.random_network(rng, 0, 32)
            b = self.random_network(rng, 0, 32)

            assert networks_overlap(str(a), str(b)) is a.overlaps(b), (a, b)

    def test_overlapping_candidates_are_rejected(self):
        rng = random.Random(self.SEED)
        for _ in range(200):
            kept = []
            for _ in range(rng.randint(1, 12)):
                network = self.random_network(rng, 12, 28)
                if not any(network.overlaps(k) for k in kept):
                    kept.append(network)
            hubs = [build_hub(i + 1, f"hub-{i}", str(n)) for i, n in enumerate(kept)]

            target = rng.randrange(len(kept))
            candidate = self.overlapping_network(rng, kept[target])
            expected = [i + 1 for i, n in enumerate(kept) if n.overlaps(candidate)]

            result = validate_new_hub(str(candidate), hubs)

            assert not result.ok, (candidate, kept)
            assert target + 1 in result.conflicting_hub_ids
            assert result.conflicting_hub_ids == expected

    def test_disjoint_candidates_are_accepted(self):
        rng = random.Random(self.SEED)
        for _ in range(200):
            kept = [self.random_network(rng, 16, 28)]
            candidate = self.random_network(rng, 16, 28)
            if candidate.overlaps(kept[0]):
                continue
            hubs = [build_hub(1, "hub-0", str(kept[0]))]

            assert validate_new_hub(str(candidate), hubs).ok


class TestValidateNewHub:
    """Tests for validate_new_hub"""

    def test_no_conflict(self):
        existing = [build_hub(1, "a", "10.1.0.0/24")]

        assert validate_new_hub("10.2.0.0/24", existing).ok

    def test_sub_block_conflicts_with_hub_id(self):
        """Test 10.5.0.0/25 against an active 10.5.0.0/24"""
        existing = [build_hub(7, "acme", "10.5.0.0/24"), build_hub(8, "other", "10.6.0.0/24")]

        result = validate_new_hub("10.5.0.0/25", existing)

        assert not result.ok
        assert result.issues[0].code == ISSUE_CIDR_OVERLAP
        assert result.conflicting_hub_ids == [7]
        with pytest.raises(CidrOverlapConflict) as exc:
            result.raise_for_issues()
        assert exc.value.hub_ids == [7]

    def test_every_conflicting_hub_is_reported(self):
        existing = [build_hub(1, "a", "10.5.0.0/25"), build_hub(2, "b", "10.5.0.128/25")]

        result = validate_new_hub("10.5.0.0/24", existing)

        assert result.conflicting_hub_ids == [1, 2]

    def test_inactive_hubs_are_ignored(self):
        existing = [build_hub(1, "old", "10.5.0.0/24", status=HubStatus.INACTIVE.value)]

        assert validate_new_hub("10.5.0.0/24", existing).ok

    def test_exclude_self(self):
        hub = build_hub(1, "a", "10.5.0.0/24")

        assert validate_new_hub("10.5.0.0/24", [hub], exclude_id=1).ok

    def test_malformed_candidate(self):
        result = validate_new_hub("10.5.0.1/24", [])

        with pytest.raises(InvalidNetworkSpecification):
            result.raise_for_issues()


class TestDeploymentPrerequisites:
    """Tests for check_deployment_prerequisites"""

    def test_complete_workstation(self):
        assert check_deployment_prerequisites(build_hub(1, "ws", "10.1.0.0/24")).ok

    def test_gateway_needs_egress_interface(self):
        hub = build_hub(1, "gw", "10.1.0.0/24", HubType.GATEWAY)

        result = check_deployment_prerequisites(hub)

        assert result.missing_fields == ["egress_interface"]
        with pytest.raises(MissingDeploymentPrerequisite) as exc:
            result.raise_for_issues()
        assert exc.value.missing == ["egress_interface"]

    def test_gateway_with_egress(self):
        hub = build_hub(1, "gw", "10.1.0.0/24", HubType.GATEWAY, egress_interface="eth0")

        assert check_deployment_prerequisites(hub).ok

    def test_customer_needs_customer_id(self):
        hub = build_hub(1, "cust", "10.1.0.0/24", HubType.CUSTOMER)

        assert check_deployment_prerequisites(hub).missing_fields == ["customer_id"]

    def test_missing_ssh_host_and_keys(self):
        hub = build_hub(1, "ws", "10.1.0.0/24", ssh_host=None, private_key_encrypted=None)

        result = check_deployment_prerequisites(hub)

        assert set(result.missing_fields) == {"ssh_host", "keypair"}

    def test_hub_ip_outside_network(self):
        hub = build_hub(1, "ws", "10.1.0.0/24", hub_ip="10.2.0.1")

        assert check_deployment_prerequisites(hub).missing_fields == ["hub_ip"]

    def test_validate_for_deployment_includes_overlap(self):
        hub = build_hub(1, "ws", "10.1.0.0/24")
        other = build_hub(2, "dup", "10.1.0.0/25")

        result = validate_for_deployment(hub, [hub, other])

        assert result.conflicting_hub_ids == [2]
