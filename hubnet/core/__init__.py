"""
Core services: keys, addressing, validation, rendering, deployment
"""

from .orchestrator import TopologyDeploymentResult, TopologyOrchestrator
from .deployment import HubDeployer, HubDeploymentResult, HubStatusReport

__all__ = [
    "HubDeployer",
    "HubDeploymentResult",
    "HubStatusReport",
    "TopologyDeploymentResult",
    "TopologyOrchestrator",
]
