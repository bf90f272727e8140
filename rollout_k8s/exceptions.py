"""Errors raised by the rollout driver."""


class RolloutK8sError(Exception):
    """Base class for rollout driver errors."""

    pass


class ResourceResolutionError(RolloutK8sError):
    """Raised when a resource kind cannot be mapped to an API endpoint."""

    pass


class ResourceNotFoundError(RolloutK8sError):
    """Raised when a resource does not exist in the cluster."""

    def __init__(self, kind: str, namespace: str | None, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {location} not found")


class ResourceAlreadyExistsError(RolloutK8sError):
    """Raised when creating a resource that already exists."""

    def __init__(self, kind: str, namespace: str | None, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {location} already exists")


class VersionConflictError(RolloutK8sError):
    """Raised when a replace loses an optimistic-concurrency race."""

    pass


class StatusDecodeError(RolloutK8sError):
    """Raised when a workload status cannot be decoded."""

    pass


class MissingPrimaryWorkloadError(RolloutK8sError):
    """Raised when an application's objects lack its primary workload."""

    pass
