# hubnet/api/v1/hubs.py
"""
Admin API Endpoints
Hubs, spokes, policies and deployments
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from ...config import settings
from ...core.events import EventBus, event_bus
from ...core.keys import SecretBox, get_secret_box
from ...core.orchestrator import TopologyOrchestrator
from ...database.models import Hub, Policy, Spoke
from ...database.session import get_db
from ...exceptions import (
    AddressSpaceExhausted,
    CidrOverlapConflict,
    DeploymentError,
    HubNetError,
    InvalidNetworkSpecification,
    InvalidStateTransition,
    KeyMaterialError,
    MissingDeploymentPrerequisite,
    ResourceConflict,
    ResourceNotFound,
    UnsafeConfigValue,
)
from ...remote.executor import RemoteExecutor, SSHExecutor
from ...schemas.base import BaseResponse, ErrorResponse
from ...schemas.hub import (
    HubCreate,
    HubDeploymentResponse,
    HubListResponse,
    HubResponse,
    HubStatusResponse,
    PolicyCreate,
    PolicyResponse,
    SpokeCreate,
    SpokeListResponse,
    SpokeResponse,
    TopologyDeployRequest,
    TopologyDeploymentResponse,
    TopologyResponse,
    TopologyTier,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Most specific first
_HTTP_STATUS = (
    (ResourceNotFound, status.HTTP_404_NOT_FOUND),
    (ResourceConflict, status.HTTP_409_CONFLICT),
    (CidrOverlapConflict, status.HTTP_409_CONFLICT),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (AddressSpaceExhausted, status.HTTP_409_CONFLICT),
    (InvalidNetworkSpecification, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (MissingDeploymentPrerequisite, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UnsafeConfigValue, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (KeyMaterialError, status.HTTP_400_BAD_REQUEST),
    (DeploymentError, status.HTTP_502_BAD_GATEWAY),
)

_ERROR_RESPONSES = {
    404: {"description": "Not found", "model": ErrorResponse},
    409: {"description": "Conflict", "model": ErrorResponse},
    422: {"description": "Invalid request", "model": ErrorResponse},
}


def _http_error(error: HubNetError) -> HTTPException:
    code = next(
        (code for exc_type, code in _HTTP_STATUS if isinstance(error, exc_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    detail = {"error": str(error), "error_code": error.error_code}
    if isinstance(error, CidrOverlapConflict):
        detail["conflicting_hub_ids"] = error.hub_ids
    if isinstance(error, MissingDeploymentPrerequisite):
        detail["missing"] = error.missing
    return HTTPException(status_code=code, detail=detail)


# === Dependencies ===

async def verify_admin_token(x_admin_token: str = Header(..., alias="X-Admin-Token")):
    """Verify admin authentication token"""
    if x_admin_token != settings.ADMIN_SECRET:
        logger.warning("Invalid admin token attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "Invalid or missing admin token",
                "error_code": "UNAUTHORIZED",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
    return True


def get_executor() -> RemoteExecutor:
    return SSHExecutor.from_settings(settings)


def get_secrets() -> SecretBox:
    try:
        return get_secret_box()
    except KeyMaterialError as e:
        logger.error(f"Secret box unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": str(e), "error_code": e.error_code},
        ) from e


def get_event_bus() -> EventBus:
    return event_bus


def get_orchestrator(
    executor: RemoteExecutor = Depends(get_executor),
    secrets: SecretBox = Depends(get_secrets),
    bus: EventBus = Depends(get_event_bus),
) -> TopologyOrchestrator:
    return TopologyOrchestrator(executor, secrets, settings, bus=bus)


def _load_hub(orchestrator: TopologyOrchestrator, db: Session, hub_id: int) -> Hub:
    try:
        return orchestrator.get_hub(db, hub_id)
    except ResourceNotFound as e:
        raise _http_error(e) from e


def _load_spoke(orchestrator: TopologyOrchestrator, db: Session, hub_id: int, spoke_id: int) -> Spoke:
    hub = _load_hub(orchestrator, db, hub_id)
    try:
        return orchestrator.get_spoke(db, hub, spoke_id)
    except ResourceNotFound as e:
        raise _http_error(e) from e


# === Hub Endpoints ===

@router.get("/hubs", response_model=HubListResponse, summary="List hubs")
async def list_hubs(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    hub_type: Optional[str] = Query(None, description="Filter by hub type"),
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_token),
):
    query = db.query(Hub)
    if status_filter:
        query = query.filter(Hub.status == status_filter)
    if hub_type:
        query = query.filter(Hub.hub_type == hub_type)
    hubs = query.order_by(Hub.id).all()
    return HubListResponse(hubs=[HubResponse.model_validate(h) for h in hubs], total=len(hubs))


@router.post(
    "/hubs",
    response_model=HubResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Create a hub",
    description="Allocates network, address, port and keys; rejects overlapping networks",
)
async def create_hub(
    data: HubCreate,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    try:
        hub = orchestrator.create_hub(db, data)
    except HubNetError as e:
        raise _http_error(e) from e
    return HubResponse.model_validate(hub)


@router.get("/topology", response_model=TopologyResponse, summary="Active hubs by deployment tier")
async def get_topology(
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    return TopologyResponse(tiers=[
        TopologyTier(hub_type=hub_type.value, hubs=[HubResponse.model_validate(h) for h in hubs])
        for hub_type, hubs in orchestrator.list_topology(db)
    ])


@router.get("/hubs/{hub_id}", response_model=HubResponse, responses=_ERROR_RESPONSES)
async def get_hub(
    hub_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    return HubResponse.model_validate(_load_hub(orchestrator, db, hub_id))


@router.delete("/hubs/{hub_id}", response_model=BaseResponse, responses=_ERROR_RESPONSES)
async def delete_hub(
    hub_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    """Delete a hub with its spokes, connections and policies"""
    hub = _load_hub(orchestrator, db, hub_id)
    name = hub.name
    orchestrator.delete_hub(db, hub)
    return BaseResponse(message=f"Hub {name} deleted")


@router.post("/hubs/{hub_id}/rotate-keys", response_model=HubListResponse, responses=_ERROR_RESPONSES)
async def rotate_hub_keys(
    hub_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    """Rotate the hub keypair; returns every hub that needs a redeploy"""
    hub = _load_hub(orchestrator, db, hub_id)
    try:
        affected = orchestrator.rotate_hub_keys(db, hub)
    except HubNetError as e:
        raise _http_error(e) from e
    return HubListResponse(hubs=[HubResponse.model_validate(h) for h in affected], total=len(affected))


# === Spoke Endpoints ===

@router.get("/hubs/{hub_id}/spokes", response_model=SpokeListResponse, responses=_ERROR_RESPONSES)
async def list_spokes(
    hub_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    hub = _load_hub(orchestrator, db, hub_id)
    spokes = db.query(Spoke).filter(Spoke.hub_id == hub.id).order_by(Spoke.id).all()
    return SpokeListResponse(spokes=[SpokeResponse.model_validate(s) for s in spokes], total=len(spokes))


@router.post(
    "/hubs/{hub_id}/spokes",
    response_model=SpokeResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
async def create_spoke(
    hub_id: int,
    data: SpokeCreate,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    hub = _load_hub(orchestrator, db, hub_id)
    try:
        spoke = orchestrator.create_spoke(db, hub, data)
    except HubNetError as e:
        raise _http_error(e) from e
    return SpokeResponse.model_validate(spoke)


@router.delete("/hubs/{hub_id}/spokes/{spoke_id}", response_model=BaseResponse, responses=_ERROR_RESPONSES)
async def delete_spoke(
    hub_id: int,
    spoke_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    spoke = _load_spoke(orchestrator, db, hub_id, spoke_id)
    name = spoke.name
    orchestrator.delete_spoke(db, spoke)
    return BaseResponse(message=f"Spoke {name} deleted")


@router.get(
    "/hubs/{hub_id}/spokes/{spoke_id}/config",
    response_class=PlainTextResponse,
    responses=_ERROR_RESPONSES,
    summary="Client config for a spoke",
)
async def get_spoke_config(
    hub_id: int,
    spoke_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    spoke = _load_spoke(orchestrator, db, hub_id, spoke_id)
    try:
        config = orchestrator.render_spoke_config(db, spoke)
    except HubNetError as e:
        raise _http_error(e) from e
    logger.info(f"Client config of spoke {spoke.name} downloaded")
    return PlainTextResponse(config)


@router.post(
    "/hubs/{hub_id}/spokes/{spoke_id}/rotate-keys",
    response_model=SpokeResponse,
    responses=_ERROR_RESPONSES,
)
async def rotate_spoke_keys(
    hub_id: int,
    spoke_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    spoke = _load_spoke(orchestrator, db, hub_id, spoke_id)
    try:
        spoke = orchestrator.rotate_spoke_keys(db, spoke)
    except HubNetError as e:
        raise _http_error(e) from e
    return SpokeResponse.model_validate(spoke)


# === Policy Endpoints ===

@router.get("/hubs/{hub_id}/policies", response_model=List[PolicyResponse], responses=_ERROR_RESPONSES)
async def list_policies(
    hub_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    hub = _load_hub(orchestrator, db, hub_id)
    policies = db.query(Policy).filter(Policy.hub_id == hub.id).order_by(Policy.id).all()
    return [PolicyResponse.model_validate(p) for p in policies]


@router.post(
    "/hubs/{hub_id}/policies",
    response_model=PolicyResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
async def create_policy(
    hub_id: int,
    data: PolicyCreate,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    hub = _load_hub(orchestrator, db, hub_id)
    try:
        policy = orchestrator.create_policy(db, hub, data)
    except HubNetError as e:
        raise _http_error(e) from e
    return PolicyResponse.model_validate(policy)


# === Deployment Endpoints ===

@router.post("/hubs/{hub_id}/deploy", response_model=HubDeploymentResponse, responses=_ERROR_RESPONSES)
async def deploy_hub(
    hub_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    """
    Deploy one hub

    Validation and remote failures are reported in the body with the final
    deployment status; only a deploy already in progress is an error.
    """
    hub = _load_hub(orchestrator, db, hub_id)
    try:
        result = await orchestrator.deploy_hub(db, hub)
    except HubNetError as e:
        raise _http_error(e) from e
    return HubDeploymentResponse(**result.to_dict())


@router.post("/hubs/{hub_id}/rollback", response_model=HubDeploymentResponse, responses=_ERROR_RESPONSES)
async def rollback_hub(
    hub_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    hub = _load_hub(orchestrator, db, hub_id)
    try:
        result = await orchestrator.rollback_hub(db, hub)
    except HubNetError as e:
        raise _http_error(e) from e
    return HubDeploymentResponse(**result.to_dict())


@router.post("/topology/deploy", response_model=TopologyDeploymentResponse, responses=_ERROR_RESPONSES)
async def deploy_topology(
    request: Optional[TopologyDeployRequest] = None,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    """Deploy every active hub (or the listed ones) tier by tier"""
    hub_ids = request.hub_ids if request else None
    try:
        outcome = await orchestrator.deploy_topology(db, hub_ids=hub_ids)
    except HubNetError as e:
        raise _http_error(e) from e
    return TopologyDeploymentResponse(
        results=[HubDeploymentResponse(**r.to_dict()) for r in outcome.results],
        cancelled=outcome.cancelled,
        succeeded=outcome.succeeded,
        total=len(outcome.results),
    )


@router.get("/hubs/{hub_id}/status", response_model=HubStatusResponse, responses=_ERROR_RESPONSES)
async def get_hub_status(
    hub_id: int,
    db: Session = Depends(get_db),
    orchestrator: TopologyOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_admin_token),
):
    """Live interface status plus sync issues against the expected config"""
    hub = _load_hub(orchestrator, db, hub_id)
    report = await orchestrator.get_deployment_status(hub)
    sync_issues = await orchestrator.check_hub_sync(db, hub, report)
    return HubStatusResponse(
        hub_id=hub.id,
        hub_name=hub.name,
        deployment_status=hub.deployment_status,
        health_status=hub.health_status,
        status_reason=hub.status_reason,
        interface_up=report.interface_up,
        listening=report.listening,
        listen_port=report.listen_port,
        carries_address=report.carries_address,
        peer_count=report.peer_count,
        latest_handshake=report.latest_handshake,
        errors=report.errors,
        sync_issues=sync_issues,
    )
