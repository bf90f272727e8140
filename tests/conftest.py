"""Pytest configuration and fixtures for rollout driver tests."""

import copy
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from kubernetes.dynamic import DynamicClient

from rollout_k8s import GroupVersionKind
from rollout_k8s.exceptions import (
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    VersionConflictError,
)


def deployment_manifest(
    name: str = "web",
    namespace: str = "default",
    generation: int = 2,
    observed_generation: Optional[int] = None,
    replicas: int = 3,
    updated: int = 0,
    ready: int = 0,
    current: Optional[int] = None,
    paused: bool = False,
) -> dict[str, Any]:
    """Build a Deployment manifest with the given rollout counters."""
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": generation,
            "resourceVersion": "100",
        },
        "spec": {
            "replicas": replicas,
            "paused": paused,
            "template": {"metadata": {"labels": {"app": name}}},
        },
        "status": {
            "observedGeneration": (
                generation if observed_generation is None else observed_generation
            ),
            "replicas": replicas if current is None else current,
            "updatedReplicas": updated,
            "readyReplicas": ready,
        },
    }


class ScriptedGateway:
    """Gateway whose ``get`` replays a scripted sequence of responses."""

    def __init__(self, responses: list[Any]):
        """
        Args:
            responses: Manifests or exceptions; the last one repeats forever
        """
        self.responses = list(responses)
        self.gets = 0

    def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any]:
        index = min(self.gets, len(self.responses) - 1)
        self.gets += 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return copy.deepcopy(response)


class FakeGateway:
    """In-memory gateway recording every call."""

    def __init__(self):
        self.objects: dict[tuple[str, Optional[str], str], dict[str, Any]] = {}
        self.calls: list[tuple] = []
        self.conflicts: set[str] = set()
        self.apply_errors: dict[str, Exception] = {}

    @staticmethod
    def _key(kind: str, namespace: Optional[str], name: str):
        return (kind, namespace, name)

    def add(self, obj: dict[str, Any]) -> dict[str, Any]:
        meta = obj.setdefault("metadata", {})
        meta.setdefault("generation", 1)
        meta.setdefault("resourceVersion", "1")
        self.objects[self._key(obj["kind"], meta.get("namespace"), meta["name"])] = obj
        return obj

    def _lookup(self, kind: str, namespace: Optional[str], name: str) -> dict[str, Any]:
        try:
            return self.objects[self._key(kind, namespace, name)]
        except KeyError:
            raise ResourceNotFoundError(kind, namespace, name) from None

    def get(self, gvk, namespace, name):
        self.calls.append(("get", gvk.kind, namespace, name))
        return copy.deepcopy(self._lookup(gvk.kind, namespace, name))

    def list_by_label(self, gvk, namespace, label_selector=""):
        self.calls.append(("list", gvk.kind, namespace, label_selector))
        return [
            copy.deepcopy(obj)
            for (kind, ns, _), obj in self.objects.items()
            if kind == gvk.kind and ns == namespace
        ]

    def create(self, field_manager, obj):
        meta = obj["metadata"]
        self.calls.append(("create", field_manager, obj["kind"], meta["name"]))
        key = self._key(obj["kind"], meta.get("namespace"), meta["name"])
        if key in self.objects:
            raise ResourceAlreadyExistsError(obj["kind"], meta.get("namespace"), meta["name"])
        stored = copy.deepcopy(obj)
        stored["metadata"]["generation"] = 1
        stored["metadata"]["resourceVersion"] = "1"
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def replace(self, field_manager, gvk, namespace, name, transform):
        self.calls.append(("replace", field_manager, gvk.kind, name))
        current = self._lookup(gvk.kind, namespace, name)
        new_obj = copy.deepcopy(transform(copy.deepcopy(current)))
        if name in self.conflicts:
            raise VersionConflictError(f"{gvk.kind} {namespace}/{name} was modified")
        meta = new_obj.setdefault("metadata", {})
        meta["generation"] = current["metadata"]["generation"] + 1
        meta["resourceVersion"] = str(int(current["metadata"]["resourceVersion"]) + 1)
        self.objects[self._key(gvk.kind, namespace, name)] = new_obj
        return copy.deepcopy(new_obj)

    def apply(self, field_manager, obj, force_conflicts=False):
        meta = obj["metadata"]
        self.calls.append(("apply", field_manager, obj["kind"], meta["name"]))
        if meta["name"] in self.apply_errors:
            raise self.apply_errors[meta["name"]]
        current = self._lookup(obj["kind"], meta.get("namespace"), meta["name"])
        annotations = obj["spec"]["template"]["metadata"]["annotations"]
        template_meta = current.setdefault("spec", {}).setdefault("template", {}).setdefault(
            "metadata", {}
        )
        live_annotations = template_meta.setdefault("annotations", {})
        # Server-side apply of an unchanged configuration is a no-op
        if any(live_annotations.get(k) != v for k, v in annotations.items()):
            live_annotations.update(annotations)
            current["metadata"]["generation"] += 1
        return copy.deepcopy(current)


@pytest.fixture
def fake_gateway():
    """In-memory resource gateway."""
    return FakeGateway()


@pytest.fixture
def mock_dynamic():
    """Mock dynamic client for gateway tests."""
    dynamic = MagicMock(spec=DynamicClient)
    dynamic.resources = MagicMock()
    resource = MagicMock()
    resource.namespaced = True
    dynamic.resources.get.return_value = resource
    return dynamic


@pytest.fixture
def sample_objects():
    """Objects of a small application, primary Deployment last but one."""
    return [
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "web-config", "namespace": "shop"},
            "data": {"LOG_LEVEL": "info"},
        },
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web", "namespace": "shop"},
            "spec": {
                "replicas": 3,
                "template": {"metadata": {"labels": {"app": "web"}}},
            },
        },
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "web", "namespace": "shop"},
            "spec": {"selector": {"app": "web"}},
        },
    ]
