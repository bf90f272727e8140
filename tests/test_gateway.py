"""Tests for ResourceGateway."""

from unittest.mock import Mock, patch

import pytest
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import (
    ConflictError,
    NotFoundError,
    ResourceNotFoundError as DiscoveryNotFoundError,
)
from tenacity import wait_none

from conftest import deployment_manifest
from rollout_k8s import DEPLOYMENT_GVK, GroupVersionKind, ResourceGateway
from rollout_k8s.exceptions import (
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ResourceResolutionError,
    VersionConflictError,
)


def instance(obj):
    """Wrap a manifest like a dynamic ResourceInstance."""
    result = Mock()
    result.to_dict.return_value = obj
    return result


class TestResourceGateway:
    """Test cases for ResourceGateway."""

    def test_resolve_caches_mapping(self, mock_dynamic):
        """Test that endpoint mappings are resolved once per kind."""
        gateway = ResourceGateway(mock_dynamic)

        first = gateway.resolve(DEPLOYMENT_GVK)
        second = gateway.resolve(DEPLOYMENT_GVK)

        assert first is second
        mock_dynamic.resources.get.assert_called_once_with(api_version="apps/v1", kind="Deployment")

    def test_discovery_runs_without_lock(self, mock_dynamic):
        """Test that the mapping lock is released while discovery runs."""
        gateway = ResourceGateway(mock_dynamic)
        resource = mock_dynamic.resources.get.return_value
        lock_states = []

        def discover(**kwargs):
            lock_states.append(gateway._mappings_lock.locked())
            return resource

        mock_dynamic.resources.get.side_effect = discover

        assert gateway.resolve(DEPLOYMENT_GVK) is resource
        assert lock_states == [False]

    def test_invalidate_refreshes_mapping(self, mock_dynamic):
        gateway = ResourceGateway(mock_dynamic)
        gateway.resolve(DEPLOYMENT_GVK)

        gateway.invalidate()
        gateway.resolve(DEPLOYMENT_GVK)

        assert mock_dynamic.resources.get.call_count == 2

    def test_resolve_unknown_kind(self, mock_dynamic):
        """Test that unknown kinds raise a resolution error."""
        mock_dynamic.resources.get.side_effect = DiscoveryNotFoundError("No matches found")
        gateway = ResourceGateway(mock_dynamic)

        with pytest.raises(ResourceResolutionError):
            gateway.resolve(GroupVersionKind(group="example.com", version="v1", kind="Widget"))

    def test_get(self, mock_dynamic):
        manifest = deployment_manifest()
        mock_dynamic.get.return_value = instance(manifest)
        gateway = ResourceGateway(mock_dynamic)

        result = gateway.get(DEPLOYMENT_GVK, "default", "web")

        assert result == manifest
        call_args = mock_dynamic.get.call_args
        assert call_args.kwargs["name"] == "web"
        assert call_args.kwargs["namespace"] == "default"

    def test_get_not_found(self, mock_dynamic):
        mock_dynamic.get.side_effect = NotFoundError(ApiException(status=404))
        gateway = ResourceGateway(mock_dynamic)

        with pytest.raises(ResourceNotFoundError):
            gateway.get(DEPLOYMENT_GVK, "default", "missing")

    def test_get_cluster_scoped_drops_namespace(self, mock_dynamic):
        """Test that cluster-scoped kinds are accessed without a namespace."""
        mock_dynamic.resources.get.return_value.namespaced = False
        mock_dynamic.get.return_value = instance({"kind": "Namespace"})
        gateway = ResourceGateway(mock_dynamic)

        gateway.get(GroupVersionKind(version="v1", kind="Namespace"), "default", "shop")

        assert mock_dynamic.get.call_args.kwargs["namespace"] is None

    def test_list_by_label(self, mock_dynamic):
        manifest = deployment_manifest()
        mock_dynamic.get.return_value = instance({"kind": "DeploymentList", "items": [manifest]})
        gateway = ResourceGateway(mock_dynamic)

        result = gateway.list_by_label(DEPLOYMENT_GVK, "default", "app=web")

        assert result == [manifest]
        assert mock_dynamic.get.call_args.kwargs["label_selector"] == "app=web"

    def test_list_items_get_kind(self, mock_dynamic):
        """Test that listed items carry apiVersion and kind."""
        mock_dynamic.get.return_value = instance({"items": [{"metadata": {"name": "web"}}]})
        gateway = ResourceGateway(mock_dynamic)

        result = gateway.list_by_label(DEPLOYMENT_GVK, "default")

        assert result == [
            {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "web"}}
        ]

    def test_list_without_selector(self, mock_dynamic):
        mock_dynamic.get.return_value = instance({"items": None})
        gateway = ResourceGateway(mock_dynamic)

        assert gateway.list_by_label(DEPLOYMENT_GVK, "default") == []
        assert mock_dynamic.get.call_args.kwargs["label_selector"] is None

    def test_create(self, mock_dynamic):
        manifest = deployment_manifest()
        mock_dynamic.create.return_value = instance(manifest)
        gateway = ResourceGateway(mock_dynamic)

        result = gateway.create("rollout-manager", manifest)

        assert result == manifest
        call_args = mock_dynamic.create.call_args
        assert call_args.kwargs["field_manager"] == "rollout-manager"
        assert call_args.kwargs["namespace"] == "default"
        assert call_args.kwargs["body"] == manifest

    def test_create_already_exists(self, mock_dynamic):
        mock_dynamic.create.side_effect = ConflictError(ApiException(status=409))
        gateway = ResourceGateway(mock_dynamic)

        with pytest.raises(ResourceAlreadyExistsError):
            gateway.create("rollout-manager", deployment_manifest())

    def test_replace_uses_read_resource_version(self, mock_dynamic):
        """Test that replace writes back the transform result with the read's version."""
        current = deployment_manifest()
        current["metadata"]["resourceVersion"] = "42"
        mock_dynamic.get.return_value = instance(current)
        mock_dynamic.replace.return_value = instance(current)
        gateway = ResourceGateway(mock_dynamic)

        desired = deployment_manifest(replicas=5)
        desired["metadata"].pop("resourceVersion")
        seen = []

        def transform(obj):
            seen.append(obj)
            return desired

        gateway.replace("rollout-manager", DEPLOYMENT_GVK, "default", "web", transform)

        assert seen == [current]
        call_args = mock_dynamic.replace.call_args
        body = call_args.kwargs["body"]
        assert body["metadata"]["resourceVersion"] == "42"
        assert body["spec"]["replicas"] == 5
        assert call_args.kwargs["field_manager"] == "rollout-manager"
        assert "resourceVersion" not in desired["metadata"]

    def test_replace_not_found(self, mock_dynamic):
        mock_dynamic.get.side_effect = NotFoundError(ApiException(status=404))
        gateway = ResourceGateway(mock_dynamic)

        with pytest.raises(ResourceNotFoundError):
            gateway.replace("rollout-manager", DEPLOYMENT_GVK, "default", "web", lambda o: o)

        mock_dynamic.replace.assert_not_called()

    def test_replace_conflict(self, mock_dynamic):
        mock_dynamic.get.return_value = instance(deployment_manifest())
        mock_dynamic.replace.side_effect = ConflictError(ApiException(status=409))
        gateway = ResourceGateway(mock_dynamic)

        with pytest.raises(VersionConflictError):
            gateway.replace("rollout-manager", DEPLOYMENT_GVK, "default", "web", lambda o: o)

    def test_apply(self, mock_dynamic):
        """Test server-side apply with a named field manager."""
        patch_obj = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"namespace": "default", "name": "web"},
        }
        mock_dynamic.server_side_apply.return_value = instance(deployment_manifest(generation=3))
        gateway = ResourceGateway(mock_dynamic)

        result = gateway.apply("rollout-deployer", patch_obj)

        assert result["metadata"]["generation"] == 3
        call_args = mock_dynamic.server_side_apply.call_args
        assert call_args.kwargs["field_manager"] == "rollout-deployer"
        assert call_args.kwargs["name"] == "web"
        assert call_args.kwargs["namespace"] == "default"
        assert call_args.kwargs["force_conflicts"] is False

    def test_no_retry_by_default(self, mock_dynamic):
        mock_dynamic.get.side_effect = ApiException(status=503)
        gateway = ResourceGateway(mock_dynamic)

        with pytest.raises(ApiException):
            gateway.get(DEPLOYMENT_GVK, "default", "web")

        assert mock_dynamic.get.call_count == 1

    def test_retry_transient_errors(self, mock_dynamic):
        """Test that configured retries recover from transient errors."""
        manifest = deployment_manifest()
        mock_dynamic.get.side_effect = [ApiException(status=503), instance(manifest)]
        gateway = ResourceGateway(mock_dynamic, retry_attempts=3)

        with patch("rollout_k8s.gateway.wait_exponential", return_value=wait_none()):
            result = gateway.get(DEPLOYMENT_GVK, "default", "web")

        assert result == manifest
        assert mock_dynamic.get.call_count == 2

    def test_no_retry_for_client_errors(self, mock_dynamic):
        mock_dynamic.get.side_effect = ApiException(status=403)
        gateway = ResourceGateway(mock_dynamic, retry_attempts=3)

        with patch("rollout_k8s.gateway.wait_exponential", return_value=wait_none()):
            with pytest.raises(ApiException):
                gateway.get(DEPLOYMENT_GVK, "default", "web")

        assert mock_dynamic.get.call_count == 1

    def test_watch(self, mock_dynamic):
        manifest = deployment_manifest()
        mock_dynamic.watch.return_value = iter(
            [{"type": "MODIFIED", "object": instance(manifest), "raw_object": manifest}]
        )
        gateway = ResourceGateway(mock_dynamic)

        events = list(gateway.watch(DEPLOYMENT_GVK, "default", timeout_seconds=5))

        assert len(events) == 1
        assert events[0].event_type == "MODIFIED"
        assert events[0].kind == "Deployment"
        assert events[0].name == "web"
        assert events[0].object == manifest
        assert mock_dynamic.watch.call_args.kwargs["timeout"] == 5
