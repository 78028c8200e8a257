# tests/conftest.py
"""
Pytest fixtures for hubnet tests
In-memory database, secret box, and a scripted fake remote host
"""

import asyncio
import os
import shlex
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

# Keep the module level engine away from the working directory
os.environ.setdefault("HUBNET_DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hubnet.config import Settings
from hubnet.core.events import EventBus
from hubnet.core.keys import SecretBox
from hubnet.core.orchestrator import TopologyOrchestrator
from hubnet.database.models import Base, HubType
from hubnet.database.session import create_db_engine
from hubnet.exceptions import RemoteExecutionFailure
from hubnet.remote.executor import CommandResult, RemoteExecutor
from hubnet.schemas.hub import HubCreate

CONFIG_DIR = "/etc/wireguard"


# ============================================
# Fake remote host
# ============================================

class FakeHost:
    """State of one remote machine"""

    def __init__(self):
        self.files: Dict[str, str] = {}
        self.interfaces: Dict[str, dict] = {}
        self.dump: Dict[str, str] = {}

        # Failure switches
        self.unreachable = False
        self.fail_apply = False
        self.drop_address = False       # interface comes up without its address
        self.fail_remove = False
        self.transfer_budget: Optional[int] = None   # successful transfers left


class FakeExecutor(RemoteExecutor):
    """
    RemoteExecutor that simulates wg-quick / ip / wg on in-memory hosts

    Every call is recorded in `calls` as (host, command); transfers are
    recorded as (host, "transfer <path>").
    """

    def __init__(self, config_dir: str = CONFIG_DIR):
        self.config_dir = config_dir
        self.hosts: Dict[str, FakeHost] = defaultdict(FakeHost)
        self.calls: List[Tuple[str, str]] = []

        # Set by tests that need to hold a deploy inside `wg-quick up`
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None

    def commands_for(self, host: str) -> List[str]:
        return [c for h, c in self.calls if h == host]

    async def execute(self, host: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        self.calls.append((host, command))
        state = self.hosts[host]
        if state.unreachable:
            raise RemoteExecutionFailure("Connection timed out", host=host, command=command)

        argv = shlex.split(command)
        name = argv[0]

        if name == "test":
            return CommandResult(0 if argv[2] in state.files else 1)
        if name == "cat":
            if argv[1] not in state.files:
                return CommandResult(1, "", f"cat: {argv[1]}: No such file or directory")
            return CommandResult(0, state.files[argv[1]])
        if name == "mkdir":
            return CommandResult(0)
        if name == "cp":
            state.files[argv[2]] = state.files[argv[1]]
            return CommandResult(0)
        if name == "chmod":
            return CommandResult(0 if argv[2] in state.files else 1)
        if name == "rm":
            if state.fail_remove:
                return CommandResult(1, "", "rm: read-only file system")
            state.files.pop(argv[2], None)
            return CommandResult(0)
        if name == "wg-quick":
            return await self._wg_quick(state, argv[1], argv[2])
        if name == "ip":
            return self._ip(state, argv)
        if name == "wg":
            return self._wg(state, argv)

        return CommandResult(127, "", f"{name}: command not found")

    async def transfer(self, host: str, content: str, remote_path: str, timeout: Optional[float] = None) -> None:
        self.calls.append((host, f"transfer {remote_path}"))
        state = self.hosts[host]
        if state.unreachable:
            raise RemoteExecutionFailure("Connection timed out", host=host)
        if state.transfer_budget is not None:
            if state.transfer_budget <= 0:
                raise RemoteExecutionFailure(f"Failed to write {remote_path}: disk full", host=host)
            state.transfer_budget -= 1
        state.files[remote_path] = content

    async def _wg_quick(self, state: FakeHost, action: str, iface: str) -> CommandResult:
        if action == "down":
            state.interfaces.pop(iface, None)
            return CommandResult(0)

        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()

        if state.fail_apply:
            return CommandResult(1, "", "RTNETLINK answers: Operation not permitted")
        config = state.files.get(f"{self.config_dir}/{iface}.conf")
        if config is None:
            return CommandResult(1, "", f"wg-quick: `{iface}' does not exist")

        values = {}
        for line in config.splitlines():
            if "=" in line and not line.startswith("#"):
                key, value = line.split("=", 1)
                values.setdefault(key.strip(), value.strip())
        state.interfaces[iface] = {
            "port": values.get("ListenPort"),
            "address": None if state.drop_address else values.get("Address"),
        }
        return CommandResult(0)

    def _ip(self, state: FakeHost, argv: List[str]) -> CommandResult:
        iface = argv[-1]
        info = state.interfaces.get(iface)
        if info is None:
            return CommandResult(1, "", f'Device "{iface}" does not exist.')
        if argv[1] == "link":
            return CommandResult(0, f"7: {iface}: <POINTOPOINT,NOARP,UP,LOWER_UP> mtu 1420 qdisc noqueue\n")
        lines = [f"7: {iface}: <POINTOPOINT,NOARP,UP,LOWER_UP> mtu 1420"]
        if info["address"]:
            lines.append(f"    inet {info['address']} scope global {iface}")
        return CommandResult(0, "\n".join(lines) + "\n")

    def _wg(self, state: FakeHost, argv: List[str]) -> CommandResult:
        iface = argv[2]
        info = state.interfaces.get(iface)
        if info is None:
            return CommandResult(1, "", "Unable to access interface: No such device")
        if argv[3] == "listen-port":
            return CommandResult(0, f"{info['port']}\n")
        return CommandResult(0, state.dump.get(iface, ""))


# ============================================
# Core fixtures
# ============================================

@pytest.fixture
def engine():
    db_engine = create_db_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def secrets():
    return SecretBox(SecretBox.generate_key())


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        WIREGUARD_CONFIG_DIR=CONFIG_DIR,
        WIREGUARD_BACKUP_DIR=f"{CONFIG_DIR}/backup",
        REMOTE_COMMAND_TIMEOUT=5.0,
        MAX_PARALLEL_DEPLOYMENTS=4,
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def remote():
    return FakeExecutor()


@pytest.fixture
def orchestrator(remote, secrets, test_settings, bus):
    from hubnet.core.ipam import SpokeAddressAllocator
    return TopologyOrchestrator(remote, secrets, test_settings, allocator=SpokeAddressAllocator(), bus=bus)


@pytest.fixture
def make_hub(db, orchestrator):
    """Factory creating deployable hubs through the orchestrator"""

    def _make(name: str, hub_type: HubType = HubType.WORKSTATION, **overrides):
        fields = {
            "name": name,
            "hub_type": hub_type,
            "ssh_host": f"{name}.example.net",
            "endpoint": f"{name}.example.net",
        }
        if hub_type == HubType.GATEWAY:
            fields["egress_interface"] = "eth0"
        if hub_type == HubType.CUSTOMER:
            fields["customer_id"] = name
        fields.update(overrides)
        return orchestrator.create_hub(db, HubCreate(**fields))

    return _make
