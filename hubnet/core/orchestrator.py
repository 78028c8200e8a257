# hubnet/core/orchestrator.py
"""
Topology Orchestrator

Library facade over the topology:
- hub / spoke / policy lifecycle (keys, addressing, overlap checks)
- key rotation
- deploy one hub, or the whole topology tier by tier
- sync checks against the live hosts

Deployment tiers follow HubType declaration order
(workstation -> logging -> gateway -> customer): a tier starts only after
every hub of the previous tier reached a terminal state. Hubs inside a tier
deploy concurrently, bounded by MAX_PARALLEL_DEPLOYMENTS.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database.models import DeploymentStatus, Hub, HubStatus, HubType, Policy, Spoke, SpokeStatus
from ..exceptions import (
    CidrOverlapConflict,
    HubNetError,
    KeyMaterialError,
    ResourceConflict,
    ResourceNotFound,
)
from ..remote.executor import RemoteExecutor
from ..schemas.hub import HubCreate, PolicyCreate, SpokeCreate
from .config_generator import config_checksum, render_spoke_config
from .deployment import NOT_STARTED, HubDeployer, HubDeploymentResult, HubStatusReport
from .domain_events import (
    EventTypes,
    emit,
    emit_async,
    hub_payload,
    keys_rotated_payload,
    spoke_payload,
    topology_deployed_payload,
)
from .events import EventBus
from .ipam import (
    SpokeAddressAllocator,
    allocate_hub_network,
    allocate_listen_port,
    first_host,
    interface_name_for,
)
from .keys import generate_keypair, validate_public_key
from .monitoring import ConnectionMonitor, PeerSnapshot
from .topology import validate_new_hub

logger = logging.getLogger(__name__)

# One registry for the process so concurrent requests share per hub locks
spoke_allocator = SpokeAddressAllocator()

REDEPLOY_REQUIRED = "redeploy required"


@dataclass
class TopologyDeploymentResult:
    """Per hub outcome of one orchestration run, in deployment order"""
    results: List[HubDeploymentResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def all_deployed(self) -> bool:
        return bool(self.results) and self.succeeded == len(self.results)

    def outcomes(self) -> Dict[str, str]:
        return {r.hub_name: r.status for r in self.results}

    def for_hub(self, hub_id: int) -> Optional[HubDeploymentResult]:
        return next((r for r in self.results if r.hub_id == hub_id), None)


class TopologyOrchestrator:
    """
    Usage:
        orchestrator = TopologyOrchestrator(SSHExecutor.from_settings(settings),
                                            get_secret_box(), settings)
        hub = orchestrator.create_hub(db, HubCreate(name="ws-1", hub_type="workstation", ...))
        result = await orchestrator.deploy_topology(db)
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        secrets,
        settings,
        allocator: Optional[SpokeAddressAllocator] = None,
        bus: Optional[EventBus] = None,
        deployer: Optional[HubDeployer] = None,
    ):
        self.executor = executor
        self.secrets = secrets
        self.settings = settings
        self.allocator = allocator or spoke_allocator
        self.bus = bus
        self.deployer = deployer or HubDeployer(executor, secrets, settings, bus)
        self.monitor = ConnectionMonitor(
            executor,
            handshake_timeout=settings.HANDSHAKE_TIMEOUT,
            command_timeout=settings.REMOTE_COMMAND_TIMEOUT,
            bus=bus,
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    @staticmethod
    def active_hubs(db: Session) -> List[Hub]:
        return db.query(Hub).filter(Hub.status == HubStatus.ACTIVE.value).all()

    @staticmethod
    def get_hub(db: Session, hub_id: int) -> Hub:
        hub = db.query(Hub).filter(Hub.id == hub_id).first()
        if not hub:
            raise ResourceNotFound(f"Hub with id {hub_id} not found")
        return hub

    @staticmethod
    def get_spoke(db: Session, hub: Hub, spoke_id: int) -> Spoke:
        spoke = db.query(Spoke).filter(Spoke.id == spoke_id, Spoke.hub_id == hub.id).first()
        if not spoke:
            raise ResourceNotFound(f"Spoke {spoke_id} not found on hub {hub.name}")
        return spoke

    def list_topology(self, db: Session) -> List[Tuple[HubType, List[Hub]]]:
        """Active hubs grouped by tier, in deployment order"""
        hubs = self.active_hubs(db)
        return [
            (hub_type, sorted((h for h in hubs if h.hub_type == hub_type.value), key=lambda h: h.name))
            for hub_type in HubType
        ]

    # =========================================================================
    # Hubs
    # =========================================================================

    def create_hub(self, db: Session, data: HubCreate) -> Hub:
        """
        Create a hub with keys, network, address, port and interface

        Raises:
            ResourceConflict: name taken
            InvalidNetworkSpecification: malformed explicit network
            CidrOverlapConflict: network overlaps an active hub
            AddressSpaceExhausted: no free /24 or listen port
            KeyMaterialError: key generation or encryption unusable
        """
        if db.query(Hub).filter(Hub.name == data.name).first():
            raise ResourceConflict(f"Hub {data.name} already exists")

        hub_type = HubType(data.hub_type)
        active = self.active_hubs(db)

        if data.network_cidr:
            network_cidr = data.network_cidr.strip()
        else:
            identifier = data.customer_id or data.name
            network_cidr = allocate_hub_network(
                identifier, [h.network_cidr for h in active], self.settings.HUB_NETWORK_SPACE
            )
        validate_new_hub(network_cidr, active).raise_for_issues()

        keypair = generate_keypair()
        hub = Hub(
            name=data.name,
            hub_type=hub_type.value,
            description=data.description,
            network_cidr=network_cidr,
            hub_ip=first_host(network_cidr),
            listen_port=data.listen_port or self._pick_listen_port(db, hub_type, data.ssh_host),
            interface_name=interface_name_for(data.name),
            endpoint=data.endpoint,
            ssh_host=data.ssh_host,
            egress_interface=data.egress_interface,
            customer_id=data.customer_id,
            dns_servers=data.dns_servers or list(self.settings.DNS_SERVERS),
            public_key=keypair.public_key,
            private_key_encrypted=self.secrets.encrypt(keypair.private_key),
            keys_generated_at=datetime.utcnow(),
            status=HubStatus.ACTIVE.value,
        )
        db.add(hub)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            # Lost a race on the active network index
            raise CidrOverlapConflict(f"Network {network_cidr} was taken concurrently") from e
        db.refresh(hub)

        logger.info(f"Created {hub_type.value} hub {hub.name} on {hub.network_cidr} (port {hub.listen_port})")
        emit(self.bus, EventTypes.HUB_CREATED, hub_payload(
            hub.id, hub.name, hub.hub_type, hub.network_cidr, hub.public_key
        ), source="orchestrator")
        return hub

    def _pick_listen_port(self, db: Session, hub_type: HubType, ssh_host: Optional[str]) -> int:
        # Ports only collide between hubs on the same host; hubs without a
        # host yet are treated as sharing one
        same_host = Hub.ssh_host.is_(None) if ssh_host is None else Hub.ssh_host == ssh_host
        used = {row[0] for row in db.query(Hub.listen_port).filter(same_host).all()}
        default = self.settings.HUB_TYPE_PORTS.get(hub_type.value)
        if default and default not in used:
            return default
        return allocate_listen_port(
            used, self.settings.LISTEN_PORT_RANGE_START, self.settings.LISTEN_PORT_RANGE_END
        )

    def delete_hub(self, db: Session, hub: Hub) -> None:
        """Delete a hub with its spokes, connections and policies"""
        payload = hub_payload(hub.id, hub.name, hub.hub_type, hub.network_cidr)
        db.delete(hub)
        db.commit()
        logger.info(f"Deleted hub {payload['name']}")
        emit(self.bus, EventTypes.HUB_DELETED, payload, source="orchestrator")

    # =========================================================================
    # Spokes
    # =========================================================================

    def create_spoke(self, db: Session, hub: Hub, data: SpokeCreate) -> Spoke:
        """
        Attach a spoke to `hub`

        Address allocation, insert and commit happen under the hub's lock, so
        concurrent calls for the same hub never get the same address.
        """
        if data.public_key:
            public_key = validate_public_key(data.public_key)
            private_key_encrypted = None
        else:
            keypair = generate_keypair()
            public_key = keypair.public_key
            private_key_encrypted = self.secrets.encrypt(keypair.private_key)

        hub_id = hub.id
        with self.allocator.hub_lock(hub_id):
            if db.query(Spoke).filter(Spoke.hub_id == hub_id, Spoke.name == data.name).first():
                raise ResourceConflict(f"Spoke {data.name} already exists on hub {hub.name}")

            spoke = Spoke(
                hub_id=hub_id,
                name=data.name,
                allocated_ip=self.allocator.allocate(db, hub, data.allocated_ip),
                device_type=data.device_type,
                public_key=public_key,
                private_key_encrypted=private_key_encrypted,
                keys_generated_at=datetime.utcnow(),
                status=SpokeStatus.ACTIVE.value,
                bandwidth_limit_mbps=data.bandwidth_limit_mbps,
                priority=data.priority,
            )
            db.add(spoke)
            self._flag_redeploy([hub], f"spoke {data.name} added")
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ResourceConflict(f"Address or name already taken on hub {hub.name}") from e
            db.refresh(spoke)

        logger.info(f"Spoke {spoke.name} -> {spoke.allocated_ip} on hub {hub.name}")
        emit(self.bus, EventTypes.SPOKE_CREATED, spoke_payload(
            spoke.id, hub_id, spoke.name, spoke.allocated_ip
        ), source="orchestrator")
        return spoke

    def delete_spoke(self, db: Session, spoke: Spoke) -> None:
        payload = spoke_payload(spoke.id, spoke.hub_id, spoke.name, spoke.allocated_ip)
        hub = spoke.hub
        db.delete(spoke)
        if hub is not None:
            self._flag_redeploy([hub], f"spoke {payload['name']} removed")
        db.commit()
        emit(self.bus, EventTypes.SPOKE_DELETED, payload, source="orchestrator")

    def render_spoke_config(self, db: Session, spoke: Spoke) -> str:
        if not spoke.private_key_encrypted:
            raise KeyMaterialError(f"Spoke {spoke.name} uses an external key; no client config is kept")
        hub = spoke.hub
        return render_spoke_config(spoke, hub, self.secrets, hub.dns_servers or self.settings.DNS_SERVERS)

    # =========================================================================
    # Policies
    # =========================================================================

    def create_policy(self, db: Session, hub: Hub, data: PolicyCreate) -> Policy:
        if db.query(Policy).filter(Policy.hub_id == hub.id, Policy.name == data.name).first():
            raise ResourceConflict(f"Policy {data.name} already exists on hub {hub.name}")
        policy = Policy(
            hub_id=hub.id,
            name=data.name,
            rule_type=data.rule_type,
            rule=data.rule,
            status="active",
        )
        db.add(policy)
        db.commit()
        db.refresh(policy)
        emit(self.bus, EventTypes.POLICY_CREATED, {
            "policy_id": policy.id,
            "hub_id": hub.id,
            "name": policy.name,
            "rule_type": policy.rule_type,
        }, source="orchestrator")
        return policy

    # =========================================================================
    # Key rotation
    # =========================================================================

    def _flag_redeploy(self, hubs: Iterable[Hub], why: str) -> None:
        for hub in hubs:
            if hub.deployment_status in (None, DeploymentStatus.PENDING.value):
                continue
            hub.status_reason = f"Configuration changed ({why}); {REDEPLOY_REQUIRED}"

    def _hubs_peering_with(self, db: Session, hub: Hub) -> List[Hub]:
        """Hubs whose rendered config carries `hub` as a peer"""
        peers = []
        for other in self.active_hubs(db):
            if other.id == hub.id:
                continue
            if other.hub_type in (HubType.WORKSTATION.value, HubType.LOGGING.value):
                peers.append(other)
            elif other.hub_type == HubType.CUSTOMER.value and hub.hub_type == HubType.WORKSTATION.value:
                peers.append(other)
        return peers

    def rotate_hub_keys(self, db: Session, hub: Hub) -> List[Hub]:
        """
        Replace the hub keypair

        Returns:
            Every hub that must be redeployed (the hub itself first)
        """
        keypair = generate_keypair()
        hub.public_key = keypair.public_key
        hub.private_key_encrypted = self.secrets.encrypt(keypair.private_key)
        hub.keys_generated_at = datetime.utcnow()

        affected = [hub] + self._hubs_peering_with(db, hub)
        self._flag_redeploy(affected, f"keys of {hub.name} rotated")
        db.commit()

        logger.info(f"Rotated keys of hub {hub.name}; {len(affected)} hub(s) need redeploy")
        emit(self.bus, EventTypes.KEYS_ROTATED, keys_rotated_payload(
            "hub", hub.id, hub.name, hub.public_key, [h.id for h in affected]
        ), source="orchestrator")
        return affected

    def rotate_spoke_keys(self, db: Session, spoke: Spoke) -> Spoke:
        if not spoke.private_key_encrypted:
            raise KeyMaterialError(f"Spoke {spoke.name} uses an external key and cannot be rotated here")

        keypair = generate_keypair()
        spoke.public_key = keypair.public_key
        spoke.private_key_encrypted = self.secrets.encrypt(keypair.private_key)
        spoke.keys_generated_at = datetime.utcnow()
        self._flag_redeploy([spoke.hub], f"keys of spoke {spoke.name} rotated")
        db.commit()

        emit(self.bus, EventTypes.KEYS_ROTATED, keys_rotated_payload(
            "spoke", spoke.id, spoke.name, spoke.public_key, [spoke.hub_id]
        ), source="orchestrator")
        return spoke

    # =========================================================================
    # Rendering / deployment
    # =========================================================================

    def render_hub_config(self, db: Session, hub: Hub) -> str:
        return self.deployer.render(db, hub)

    async def deploy_hub(self, db: Session, hub: Hub) -> HubDeploymentResult:
        return await self.deployer.deploy_hub(db, hub)

    async def rollback_hub(self, db: Session, hub: Hub) -> HubDeploymentResult:
        return await self.deployer.rollback_hub(db, hub)

    @staticmethod
    def _errored(hub: Hub, reason: str, error: Optional[HubNetError] = None) -> HubDeploymentResult:
        return HubDeploymentResult(
            hub_id=hub.id,
            hub_name=hub.name,
            hub_type=hub.hub_type,
            status=hub.deployment_status,
            reason=reason,
            error=error,
        )

    def _fail_unexpected(self, db: Session, hub: Hub, error: Exception) -> HubDeploymentResult:
        """Leave a hub that blew up mid deploy in `failed` so it can be rolled back"""
        reason = f"Unexpected error: {error}"
        db.rollback()
        if hub.deployment_status == DeploymentStatus.DEPLOYING.value:
            hub.transition_to(DeploymentStatus.FAILED, reason)
            db.commit()
        return self._errored(hub, reason)

    @staticmethod
    def _not_started(hub: Hub) -> HubDeploymentResult:
        return HubDeploymentResult(
            hub_id=hub.id,
            hub_name=hub.name,
            hub_type=hub.hub_type,
            status=NOT_STARTED,
            reason="Orchestration cancelled before this hub started",
        )

    async def deploy_topology(
        self,
        db: Session,
        hub_ids: Optional[List[int]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TopologyDeploymentResult:
        """
        Deploy active hubs tier by tier

        Cancellation (setting `cancel_event` or cancelling the awaiting task)
        lets hubs already deploying finish; hubs not started yet are reported
        as not_started. Task cancellation is re-raised once in-flight hubs
        are terminal.
        """
        hubs = self.active_hubs(db)
        if hub_ids is not None:
            wanted = set(hub_ids)
            hubs = [h for h in hubs if h.id in wanted]
            missing = wanted - {h.id for h in hubs}
            if missing:
                raise ResourceNotFound(f"No active hub(s) with id {sorted(missing)}")

        tiers = [
            (hub_type, sorted((h for h in hubs if h.hub_type == hub_type.value), key=lambda h: h.name))
            for hub_type in HubType
        ]
        results: Dict[int, HubDeploymentResult] = {}
        stop = asyncio.Event()
        semaphore = asyncio.Semaphore(max(1, self.settings.MAX_PARALLEL_DEPLOYMENTS))

        def stopping() -> bool:
            return stop.is_set() or (cancel_event is not None and cancel_event.is_set())

        async def deploy_one(hub: Hub) -> None:
            async with semaphore:
                if stopping():
                    results[hub.id] = self._not_started(hub)
                    return
                try:
                    results[hub.id] = await self.deployer.deploy_hub(db, hub)
                except HubNetError as e:
                    results[hub.id] = self._errored(hub, str(e), e)
                except Exception as e:
                    logger.error(f"Unexpected error deploying hub {hub.name}: {e}")
                    results[hub.id] = self._fail_unexpected(db, hub, e)

        async def run_tiers() -> None:
            for hub_type, tier_hubs in tiers:
                if not tier_hubs:
                    continue
                if stopping():
                    for hub in tier_hubs:
                        results[hub.id] = self._not_started(hub)
                    continue
                logger.info(f"Deploying tier {hub_type.value}: {[h.name for h in tier_hubs]}")
                await asyncio.gather(*(deploy_one(h) for h in tier_hubs))

        run = asyncio.ensure_future(run_tiers())
        try:
            await asyncio.shield(run)
        except asyncio.CancelledError:
            logger.warning("Topology deployment cancelled; waiting for in-flight hubs")
            stop.set()
            await run
            raise

        ordered = [results[h.id] for _, tier_hubs in tiers for h in tier_hubs]
        outcome = TopologyDeploymentResult(
            results=ordered,
            cancelled=any(r.status == NOT_STARTED for r in ordered),
        )
        logger.info(f"Topology deployment finished: {outcome.succeeded}/{len(ordered)} deployed")
        await emit_async(
            self.bus,
            EventTypes.TOPOLOGY_DEPLOYED,
            topology_deployed_payload(outcome.outcomes(), outcome.cancelled),
            source="orchestrator",
        )
        return outcome

    # =========================================================================
    # Status / sync
    # =========================================================================

    async def get_deployment_status(self, hub: Hub) -> HubStatusReport:
        return await self.deployer.get_deployment_status(hub)

    async def check_hub_sync(self, db: Session, hub: Hub, report: Optional[HubStatusReport] = None) -> List[str]:
        """
        Compare the live hub with what it should run

        Args:
            report: status already fetched for this hub, queried when omitted

        Returns:
            Human readable issues, empty when in sync
        """
        if report is None:
            report = await self.deployer.get_deployment_status(hub)
        issues = list(report.errors)

        try:
            config = self.render_hub_config(db, hub)
        except HubNetError as e:
            issues.append(f"Cannot render expected configuration: {e}")
            return issues

        expected_peers = config.count("[Peer]")
        if report.interface_up and report.peer_count != expected_peers:
            issues.append(f"Peer count mismatch: expected {expected_peers}, found {report.peer_count}")
        if hub.config_checksum and hub.config_checksum != config_checksum(config):
            issues.append("Configuration drift: rendered config differs from the deployed one")

        if issues:
            logger.warning(f"Hub {hub.name} out of sync: {issues}")
        return issues

    async def collect_connections(self, db: Session, hub: Hub) -> List[PeerSnapshot]:
        return await self.monitor.collect(db, hub)
