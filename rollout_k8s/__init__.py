"""Rollout driver - Kubernetes Deployment rollouts and rollout tracking."""

from .application import (
    ApplicationDescriptor,
    ManifestApplication,
    StaticApplication,
    find_primary_workload,
)
from .cluster import ClusterConnection
from .config import Settings, get_settings
from .exceptions import (
    MissingPrimaryWorkloadError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ResourceResolutionError,
    RolloutK8sError,
    StatusDecodeError,
    VersionConflictError,
)
from .gateway import ResourceGateway
from .models import (
    DEPLOYMENT_GVK,
    ClusterConfig,
    GroupVersionKind,
    RolloutEvent,
    RolloutPhase,
    TerminationReason,
    WatchEvent,
    WorkloadStatus,
)
from .orchestrator import DeploymentOrchestrator
from .tracker import RolloutSession, RolloutTracker

__version__ = "0.1.0"

__all__ = [
    # Cluster access
    "ClusterConnection",
    "ResourceGateway",
    # Orchestration and tracking
    "DeploymentOrchestrator",
    "RolloutTracker",
    "RolloutSession",
    # Applications
    "ApplicationDescriptor",
    "StaticApplication",
    "ManifestApplication",
    "find_primary_workload",
    # Configuration
    "Settings",
    "get_settings",
    # Models
    "ClusterConfig",
    "GroupVersionKind",
    "DEPLOYMENT_GVK",
    "RolloutPhase",
    "TerminationReason",
    "RolloutEvent",
    "WorkloadStatus",
    "WatchEvent",
    # Errors
    "RolloutK8sError",
    "ResourceResolutionError",
    "ResourceNotFoundError",
    "ResourceAlreadyExistsError",
    "VersionConflictError",
    "StatusDecodeError",
    "MissingPrimaryWorkloadError",
]
