"""Kubernetes rollout models."""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import StatusDecodeError


class GroupVersionKind(BaseModel):
    """Identifies a resource kind independently of its REST endpoint."""

    model_config = ConfigDict(frozen=True)

    group: str = ""
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        """Get the apiVersion string (``v1`` or ``group/version``)."""
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    @classmethod
    def from_manifest(cls, obj: dict[str, Any]) -> "GroupVersionKind":
        """
        Extract the kind of a manifest.

        Args:
            obj: Resource manifest

        Returns:
            GroupVersionKind of the manifest

        Raises:
            ValueError: If apiVersion or kind is missing
        """
        api_version = obj.get("apiVersion")
        kind = obj.get("kind")
        if not api_version or not kind:
            raise ValueError("Manifest is missing apiVersion or kind")

        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}/{self.kind}"


DEPLOYMENT_GVK = GroupVersionKind(group="apps", version="v1", kind="Deployment")


class RolloutPhase(IntEnum):
    """Rollout phase, ordered by progression."""

    PENDING = 0
    DEPLOYING = 1
    REPLICAS_UPDATED = 2
    REPLICAS_READY = 3
    INTERRUPTED = 4


class TerminationReason(str, Enum):
    """Why a rollout session ended."""

    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


def _nested(obj: dict[str, Any], *path: str) -> Any:
    value: Any = obj
    for depth, key in enumerate(path):
        if value is None:
            return None
        if not isinstance(value, dict):
            location = ".".join(path[:depth]) or "<root>"
            raise StatusDecodeError(f"Expected an object at {location}")
        value = value.get(key)
    return value


class WorkloadStatus(BaseModel):
    """Immutable snapshot of a workload's rollout counters."""

    model_config = ConfigDict(frozen=True, strict=True)

    generation: int = 0
    observed_generation: int = 0
    desired_replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    current_replicas: int = 0
    paused: bool = False

    @classmethod
    def from_manifest(cls, obj: dict[str, Any]) -> "WorkloadStatus":
        """
        Decode a status snapshot from a Deployment manifest.

        Only ``metadata.generation``, ``spec.replicas``, ``spec.paused`` and
        ``status.{observedGeneration,replicas,updatedReplicas,readyReplicas}``
        are read. Absent values count as zero.

        Raises:
            StatusDecodeError: If any of the fields has the wrong shape
        """
        fields = {
            "generation": ("metadata", "generation"),
            "desired_replicas": ("spec", "replicas"),
            "paused": ("spec", "paused"),
            "observed_generation": ("status", "observedGeneration"),
            "current_replicas": ("status", "replicas"),
            "updated_replicas": ("status", "updatedReplicas"),
            "ready_replicas": ("status", "readyReplicas"),
        }
        values = {}
        for field, path in fields.items():
            value = _nested(obj, *path)
            if value is not None:
                values[field] = value

        try:
            return cls(**values)
        except ValidationError as e:
            raise StatusDecodeError(f"Invalid workload status: {e}") from e


class RolloutEvent(BaseModel):
    """A phase transition or the final result of a rollout session."""

    model_config = ConfigDict(frozen=True)

    phase: RolloutPhase
    namespace: str
    name: str
    status: Optional[WorkloadStatus] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    done: bool = False
    reason: Optional[TerminationReason] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        """True for a terminal event of a completed rollout."""
        return self.done and self.phase == RolloutPhase.REPLICAS_READY


class ClusterConfig(BaseModel):
    """Cluster configuration."""

    name: str = "default"
    kubeconfig_path: Optional[str] = None
    kubeconfig_data: Optional[str] = None  # Base64 encoded kubeconfig
    context: Optional[str] = None  # Specific context to use
    in_cluster: bool = False


class WatchEvent(BaseModel):
    """Kubernetes watch event."""

    event_type: str  # ADDED, MODIFIED, DELETED, ERROR
    kind: str
    name: str
    namespace: Optional[str] = None
    object: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
