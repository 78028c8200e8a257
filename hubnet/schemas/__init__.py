from .base import BaseResponse, ErrorResponse
from .hub import (
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
