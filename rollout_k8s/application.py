"""Application descriptors: the desired objects of a logical application."""

import copy
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Union

import yaml

from .exceptions import MissingPrimaryWorkloadError
from .models import DEPLOYMENT_GVK

Manifest = dict[str, Any]


class ApplicationDescriptor(ABC):
    """
    A logical application.

    Identifies a namespace and a primary workload, and produces the ordered
    list of objects to create. The primary workload must be among them.
    """

    @property
    @abstractmethod
    def namespace(self) -> str:
        """Namespace of the primary workload."""
        pass

    @property
    @abstractmethod
    def primary_workload_name(self) -> str:
        """Name of the primary Deployment."""
        pass

    @abstractmethod
    def desired_objects(self) -> list[Manifest]:
        """
        Produce the desired objects.

        Returns:
            Ordered list of resource manifests
        """
        pass


def is_primary_workload(obj: Manifest, namespace: str, name: str) -> bool:
    """Check whether a manifest is the Deployment ``namespace/name``."""
    meta = obj.get("metadata") or {}
    return (
        obj.get("kind") == DEPLOYMENT_GVK.kind
        and meta.get("namespace") == namespace
        and meta.get("name") == name
    )


def find_primary_workload(objects: list[Manifest], namespace: str, name: str) -> int:
    """
    Locate the primary workload among desired objects.

    Returns:
        Index of the first matching object

    Raises:
        MissingPrimaryWorkloadError: If no object matches
    """
    for i, obj in enumerate(objects):
        if is_primary_workload(obj, namespace, name):
            return i
    raise MissingPrimaryWorkloadError(
        f"Deployment {namespace}/{name} not found in application objects"
    )


class StaticApplication(ApplicationDescriptor):
    """Application whose objects are given up front."""

    def __init__(self, namespace: str, primary_workload_name: str, objects: Iterable[Manifest]):
        self._namespace = namespace
        self._name = primary_workload_name
        self._objects = list(objects)

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def primary_workload_name(self) -> str:
        return self._name

    def desired_objects(self) -> list[Manifest]:
        return copy.deepcopy(self._objects)


class ManifestApplication(ApplicationDescriptor):
    """
    Application loaded from multi-document YAML manifest files.

    Objects that carry no namespace are placed in the application's
    namespace, except for the cluster-scoped kinds listed in
    ``cluster_scoped_kinds``.
    """

    DEFAULT_CLUSTER_SCOPED_KINDS = frozenset(
        {
            "Namespace",
            "ClusterRole",
            "ClusterRoleBinding",
            "CustomResourceDefinition",
            "PersistentVolume",
            "StorageClass",
            "PriorityClass",
        }
    )

    def __init__(
        self,
        namespace: str,
        primary_workload_name: str,
        paths: Iterable[Union[str, Path]],
        cluster_scoped_kinds: Iterable[str] = DEFAULT_CLUSTER_SCOPED_KINDS,
    ):
        self._namespace = namespace
        self._name = primary_workload_name
        self.paths = [Path(p) for p in paths]
        self.cluster_scoped_kinds = frozenset(cluster_scoped_kinds)

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def primary_workload_name(self) -> str:
        return self._name

    def desired_objects(self) -> list[Manifest]:
        objects = []
        for path in self.paths:
            with path.open(encoding="utf-8") as f:
                for doc in yaml.safe_load_all(f):
                    if not doc:
                        continue
                    if not isinstance(doc, dict):
                        raise ValueError(f"{path}: expected a mapping, got {type(doc).__name__}")
                    objects.append(self._with_namespace(doc))
        return objects

    def _with_namespace(self, obj: Manifest) -> Manifest:
        if obj.get("kind") in self.cluster_scoped_kinds:
            return obj
        meta = obj.setdefault("metadata", {})
        meta.setdefault("namespace", self._namespace)
        return obj
