# hubnet/core/deployment.py
"""
Hub Deployer

Per hub deploy sequence:
1. validate (no remote calls on failure)
2. render config
3. backup current remote config (always, even on first deploy)
4. transfer + chmod 600
5. apply (wg-quick down/up)
6. verify (link UP, listening on the declared port, carries hub_ip)

Any failure in 4-6 marks the hub failed and restores the backup, or removes
the config when there was none. A failed restore is reported distinctly as
RollbackFailure and needs manual intervention.

Cancelling a deploy once the hub is marked deploying does not abandon it:
steps 3-6 run shielded and the CancelledError is re-raised after the hub
is deployed, failed or rolled back.

The deployer never retries; `retryable` in the result tells the caller
whether trying again makes sense.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..database.models import (
    DeploymentStatus,
    HealthStatus,
    Hub,
    HubStatus,
)
from ..exceptions import (
    DeploymentError,
    HubNetError,
    InvalidStateTransition,
    RemoteExecutionFailure,
    RollbackFailure,
    VerificationFailure,
)
from ..remote import commands
from ..remote.executor import CommandResult, RemoteExecutor
from .config_generator import build_hub_options, config_checksum, render_hub_config
from .domain_events import EventTypes, deployment_payload, emit_async
from .events import EventBus
from .monitoring import parse_wg_dump
from .topology import validate_for_deployment

logger = logging.getLogger(__name__)

NOT_STARTED = "not_started"


@dataclass
class HubDeploymentResult:
    """Outcome of one hub deploy or rollback"""
    hub_id: int
    hub_name: str
    hub_type: str
    status: str
    reason: Optional[str] = None
    error: Optional[HubNetError] = None
    retryable: bool = False
    needs_manual_intervention: bool = False
    checksum: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeploymentStatus.DEPLOYED.value

    def to_dict(self) -> dict:
        return {
            "hub_id": self.hub_id,
            "hub_name": self.hub_name,
            "hub_type": self.hub_type,
            "status": self.status,
            "reason": self.reason,
            "error_code": self.error.error_code if self.error else None,
            "retryable": self.retryable,
            "needs_manual_intervention": self.needs_manual_intervention,
            "checksum": self.checksum,
        }


@dataclass
class HubStatusReport:
    """Live state of a hub interface"""
    hub_id: int
    hub_name: str
    interface_up: bool = False
    listening: bool = False
    listen_port: Optional[int] = None
    carries_address: bool = False
    peer_count: int = 0
    latest_handshake: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.interface_up and self.listening and self.carries_address and not self.errors


class HubDeployer:
    """
    Drives one hub through the deployment state machine

    Collaborators are injected: the remote executor, the secret box used to
    decrypt the hub key at render time, settings and an optional event bus.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        secrets,
        settings,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.executor = executor
        self.secrets = secrets
        self.settings = settings
        self.bus = bus
        self.clock = clock

    # =========================================================================
    # Paths / remote helpers
    # =========================================================================

    def config_path(self, hub: Hub) -> str:
        return commands.config_path(self.settings.WIREGUARD_CONFIG_DIR, hub.interface_name)

    def backup_path(self, hub: Hub) -> str:
        return commands.backup_path(self.settings.WIREGUARD_BACKUP_DIR, hub.interface_name)

    @property
    def timeout(self) -> float:
        return self.settings.REMOTE_COMMAND_TIMEOUT

    async def _run(self, host: str, command: str, check: bool = True) -> CommandResult:
        result = await self.executor.execute(host, command, self.timeout)
        if check and not result.ok:
            raise RemoteExecutionFailure(
                f"'{command}' exited with {result.exit_code}: {result.stderr.strip()}",
                host=host,
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    def render(self, db: Session, hub: Hub) -> str:
        """Render the config `hub` would get right now"""
        active_hubs = self._active_hubs(db)
        options = build_hub_options(
            hub,
            active_hubs,
            log_port=self.settings.LOG_INGEST_PORT,
            retention_days=self.settings.LOG_RETENTION_DAYS,
        )
        return render_hub_config(hub, hub.spokes, options, self.secrets)

    @staticmethod
    def _active_hubs(db: Session) -> List[Hub]:
        return db.query(Hub).filter(Hub.status == HubStatus.ACTIVE.value).all()

    def _result(self, hub: Hub, **kwargs) -> HubDeploymentResult:
        return HubDeploymentResult(
            hub_id=hub.id,
            hub_name=hub.name,
            hub_type=hub.hub_type,
            status=kwargs.pop("status", hub.deployment_status),
            reason=kwargs.pop("reason", hub.status_reason),
            **kwargs,
        )

    async def _emit(self, event_type: str, hub: Hub, checksum: Optional[str] = None) -> None:
        await emit_async(
            self.bus,
            event_type,
            deployment_payload(hub.id, hub.name, hub.deployment_status, hub.status_reason, checksum),
            source="deployer",
        )

    # =========================================================================
    # Deploy
    # =========================================================================

    async def deploy_hub(self, db: Session, hub: Hub) -> HubDeploymentResult:
        """
        Deploy one hub

        Never raises for validation or remote problems; those end up in the
        result. InvalidStateTransition is raised if the hub is already being
        deployed.
        """
        if hub.deployment_status == DeploymentStatus.DEPLOYING.value:
            raise InvalidStateTransition(f"Hub {hub.name} is already deploying")

        # 1 + 2: everything that can be checked locally
        try:
            validate_for_deployment(hub, self._active_hubs(db)).raise_for_issues()
            config = self.render(db, hub)
        except HubNetError as e:
            hub.transition_to(DeploymentStatus.DEPLOYING)
            hub.transition_to(DeploymentStatus.FAILED, f"Validation failed: {e}")
            hub.health_status = HealthStatus.ERROR.value
            db.commit()
            logger.warning(f"Hub {hub.name} not deployed: {e}")
            await self._emit(EventTypes.DEPLOYMENT_FAILED, hub)
            return self._result(hub, error=e)

        checksum = config_checksum(config)
        host = hub.ssh_host

        hub.transition_to(DeploymentStatus.DEPLOYING, "Deployment in progress")
        db.commit()
        logger.info(f"Deploying hub {hub.name} ({hub.hub_type}) to {host}")

        # A committed DEPLOYING hub must reach a terminal state, so
        # cancellation waits for the remote steps instead of abandoning them
        run = asyncio.ensure_future(self._deploy_remote(db, hub, host, config, checksum))
        try:
            return await asyncio.shield(run)
        except asyncio.CancelledError:
            logger.warning(f"Deploy of hub {hub.name} cancelled; waiting for it to finish")
            await run
            raise

    async def _deploy_remote(
        self,
        db: Session,
        hub: Hub,
        host: str,
        config: str,
        checksum: str,
    ) -> HubDeploymentResult:
        """Steps 3 - 6; always leaves the hub deployed, failed or rolled back"""
        await self._emit(EventTypes.DEPLOYMENT_STARTED, hub, checksum)

        # 3: nothing has been changed remotely if the backup fails
        try:
            backup = await self._take_backup(host, hub)
        except DeploymentError as e:
            hub.transition_to(DeploymentStatus.FAILED, f"Backup failed: {e}")
            hub.health_status = HealthStatus.ERROR.value
            db.commit()
            logger.error(f"Hub {hub.name}: backup failed, remote config untouched: {e}")
            await self._emit(EventTypes.DEPLOYMENT_FAILED, hub)
            return self._result(hub, error=e, retryable=isinstance(e, RemoteExecutionFailure))

        # 4 - 6
        step = "transfer"
        try:
            await self._transfer(host, hub, config)
            step = "apply"
            await self._apply(host, hub)
            step = "verify"
            await self._verify(host, hub)
        except DeploymentError as e:
            return await self._fail_and_roll_back(db, hub, backup, step, e)

        hub.transition_to(DeploymentStatus.DEPLOYED, f"Deployed configuration {checksum[:12]}")
        hub.health_status = HealthStatus.HEALTHY.value
        hub.config_checksum = checksum
        hub.last_deployed_at = self.clock()
        db.commit()
        logger.info(f"Hub {hub.name} deployed")
        await self._emit(EventTypes.DEPLOYMENT_SUCCEEDED, hub, checksum)
        return self._result(hub, checksum=checksum)

    async def _take_backup(self, host: str, hub: Hub) -> Optional[str]:
        """Current remote config, or None if there is none yet"""
        path = self.config_path(hub)
        exists = await self._run(host, commands.file_exists(path), check=False)
        if not exists.ok:
            logger.info(f"Hub {hub.name}: no existing config at {path}")
            return None

        current = await self._run(host, commands.read_file(path))
        await self._run(host, commands.make_dir(self.settings.WIREGUARD_BACKUP_DIR))
        await self._run(host, commands.copy_file(path, self.backup_path(hub)))
        logger.info(f"Hub {hub.name}: backed up {path} ({len(current.stdout)} bytes)")
        return current.stdout

    async def _transfer(self, host: str, hub: Hub, config: str) -> None:
        path = self.config_path(hub)
        await self.executor.transfer(host, config, path, self.timeout)
        await self._run(host, commands.restrict_permissions(path))

    async def _apply(self, host: str, hub: Hub) -> None:
        await self._run(host, commands.interface_down(hub.interface_name), check=False)
        await self._run(host, commands.interface_up(hub.interface_name))

    async def _verify(self, host: str, hub: Hub) -> None:
        iface = hub.interface_name

        link = await self._run(host, commands.link_show(iface), check=False)
        if not link.ok or "UP" not in commands.link_flags(link.stdout):
            raise VerificationFailure(f"Interface {iface} is not up")

        port = await self._run(host, commands.listen_port(iface), check=False)
        if not port.ok or port.stdout.strip() != str(hub.listen_port):
            raise VerificationFailure(
                f"Interface {iface} is not listening on {hub.listen_port} (got {port.stdout.strip() or 'nothing'})"
            )

        addr = await self._run(host, commands.address_show(iface), check=False)
        if not addr.ok or not commands.carries_address(addr.stdout, hub.hub_ip):
            raise VerificationFailure(f"Interface {iface} does not carry {hub.hub_ip}")

    # =========================================================================
    # Rollback
    # =========================================================================

    async def _restore(self, host: str, hub: Hub, backup: Optional[str]) -> None:
        path = self.config_path(hub)
        await self._run(host, commands.interface_down(hub.interface_name), check=False)
        if backup is None:
            await self._run(host, commands.remove_file(path))
            return
        await self.executor.transfer(host, backup, path, self.timeout)
        await self._run(host, commands.restrict_permissions(path))
        await self._run(host, commands.interface_up(hub.interface_name))

    async def _fail_and_roll_back(
        self,
        db: Session,
        hub: Hub,
        backup: Optional[str],
        step: str,
        error: DeploymentError,
    ) -> HubDeploymentResult:
        reason = f"{step.capitalize()} failed: {error}"
        hub.transition_to(DeploymentStatus.FAILED, reason)
        hub.health_status = HealthStatus.ERROR.value
        db.commit()
        logger.error(f"Hub {hub.name}: {reason}; rolling back")
        await self._emit(EventTypes.DEPLOYMENT_FAILED, hub)

        try:
            await self._restore(hub.ssh_host, hub, backup)
        except DeploymentError as e:
            return await self._rollback_failed(db, hub, reason, e)

        restored = "previous configuration restored" if backup is not None else "configuration removed"
        hub.transition_to(DeploymentStatus.ROLLED_BACK, f"{reason}; {restored}")
        db.commit()
        logger.warning(f"Hub {hub.name} rolled back: {restored}")
        await self._emit(EventTypes.ROLLBACK_PERFORMED, hub)
        return self._result(hub, error=error, retryable=isinstance(error, RemoteExecutionFailure))

    async def _rollback_failed(
        self,
        db: Session,
        hub: Hub,
        reason: str,
        cause: DeploymentError,
    ) -> HubDeploymentResult:
        failure = RollbackFailure(f"Rollback of hub {hub.name} failed: {cause}", cause=cause)
        hub.status_reason = f"{reason}; rollback failed: {cause}; manual intervention required"
        db.commit()
        logger.critical(f"Hub {hub.name}: {failure} - remote host may be inconsistent")
        await self._emit(EventTypes.ROLLBACK_FAILED, hub)
        return self._result(hub, error=failure, needs_manual_intervention=True)

    async def rollback_hub(self, db: Session, hub: Hub) -> HubDeploymentResult:
        """
        Restore a failed hub from the backup copy on its host

        Without a remote backup the config is removed.
        """
        if hub.deployment_status != DeploymentStatus.FAILED.value:
            raise InvalidStateTransition(
                f"Hub {hub.name}: only failed deployments can be rolled back "
                f"(status is {hub.deployment_status})"
            )

        host = hub.ssh_host
        reason = hub.status_reason or "Deployment failed"
        try:
            backup_file = self.backup_path(hub)
            exists = await self._run(host, commands.file_exists(backup_file), check=False)
            backup = (await self._run(host, commands.read_file(backup_file))).stdout if exists.ok else None
            await self._restore(host, hub, backup)
        except DeploymentError as e:
            return await self._rollback_failed(db, hub, reason, e)

        restored = "restored from remote backup" if backup is not None else "configuration removed"
        hub.transition_to(DeploymentStatus.ROLLED_BACK, f"Manual rollback: {restored}")
        db.commit()
        await self._emit(EventTypes.ROLLBACK_PERFORMED, hub)
        return self._result(hub)

    # =========================================================================
    # Status
    # =========================================================================

    async def get_deployment_status(self, hub: Hub) -> HubStatusReport:
        """Query the live interface; transport errors are reported, not raised"""
        report = HubStatusReport(hub_id=hub.id, hub_name=hub.name)
        if not hub.ssh_host:
            report.errors.append("No SSH host configured")
            return report

        host = hub.ssh_host
        iface = hub.interface_name
        try:
            link = await self._run(host, commands.link_show(iface), check=False)
            report.interface_up = link.ok and "UP" in commands.link_flags(link.stdout)
            if not report.interface_up:
                report.errors.append(f"Interface {iface} is down")

            port = await self._run(host, commands.listen_port(iface), check=False)
            if port.ok and port.stdout.strip().isdigit():
                report.listen_port = int(port.stdout.strip())
            report.listening = report.listen_port == hub.listen_port
            if not report.listening:
                report.errors.append(f"Not listening on {hub.listen_port}")

            addr = await self._run(host, commands.address_show(iface), check=False)
            report.carries_address = addr.ok and commands.carries_address(addr.stdout, hub.hub_ip)
            if not report.carries_address:
                report.errors.append(f"Address {hub.hub_ip} not assigned")

            dump = await self._run(host, commands.wg_dump(iface), check=False)
            if dump.ok:
                peers = parse_wg_dump(dump.stdout)
                report.peer_count = len(peers)
                handshakes = [p.latest_handshake for p in peers if p.latest_handshake]
                report.latest_handshake = max(handshakes) if handshakes else None
        except RemoteExecutionFailure as e:
            report.errors.append(str(e))

        return report
