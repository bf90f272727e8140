"""Generic resource access on top of the Kubernetes dynamic client."""

import logging
import threading
from typing import Any, Callable, Iterator, Optional

from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import (
    ConflictError,
    NotFoundError,
    ResourceNotFoundError as DiscoveryNotFoundError,
    ResourceNotUniqueError,
)
from kubernetes.dynamic.resource import Resource
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential
from urllib3.exceptions import HTTPError as TransportError

from .exceptions import (
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ResourceResolutionError,
    VersionConflictError,
)
from .models import GroupVersionKind, WatchEvent

logger = logging.getLogger(__name__)

Manifest = dict[str, Any]
Transform = Callable[[Manifest], Manifest]

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ApiException):
        return exc.status in TRANSIENT_STATUS_CODES
    return isinstance(exc, TransportError)


def _metadata(obj: Manifest) -> dict[str, Any]:
    return obj.get("metadata") or {}


class ResourceGateway:
    """
    Stateless facade over the cluster API.

    Resolves resource kinds to REST endpoints and performs CRUD, server-side
    apply and watch operations on plain ``dict`` manifests. Safe for
    concurrent use from multiple threads.
    """

    def __init__(self, dynamic: DynamicClient, retry_attempts: int = 1):
        """
        Initialize resource gateway.

        Args:
            dynamic: Dynamic client of the target cluster
            retry_attempts: Attempts for transient API errors (1 disables retries)
        """
        self.dynamic = dynamic
        self.retry_attempts = retry_attempts
        self._mappings: dict[GroupVersionKind, Resource] = {}
        self._mappings_lock = threading.Lock()

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        retryer = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        return retryer(fn, *args, **kwargs)

    def resolve(self, gvk: GroupVersionKind) -> Resource:
        """
        Map a resource kind to its API endpoint.

        Args:
            gvk: Resource kind

        Returns:
            Resolved dynamic Resource (plural name and scope)

        Raises:
            ResourceResolutionError: If the kind is unknown to the cluster
        """
        with self._mappings_lock:
            resource = self._mappings.get(gvk)
        if resource is not None:
            return resource

        # Discovery runs unlocked; the first mapping stored for a kind wins
        try:
            resource = self.dynamic.resources.get(api_version=gvk.api_version, kind=gvk.kind)
        except (DiscoveryNotFoundError, ResourceNotUniqueError) as e:
            raise ResourceResolutionError(f"Cannot resolve kind {gvk}: {e}") from e

        with self._mappings_lock:
            return self._mappings.setdefault(gvk, resource)

    def invalidate(self) -> None:
        """Drop cached endpoint mappings."""
        with self._mappings_lock:
            self._mappings.clear()

    def _scope(self, resource: Resource, namespace: Optional[str]) -> Optional[str]:
        return namespace if resource.namespaced else None

    def get(self, gvk: GroupVersionKind, namespace: Optional[str], name: str) -> Manifest:
        """
        Get a resource.

        Args:
            gvk: Resource kind
            namespace: Namespace (ignored for cluster-scoped kinds)
            name: Resource name

        Returns:
            Resource manifest

        Raises:
            ResourceNotFoundError: If the resource does not exist
        """
        resource = self.resolve(gvk)
        namespace = self._scope(resource, namespace)
        try:
            result = self._call(
                self.dynamic.get, resource, name=name, namespace=namespace
            )
        except NotFoundError as e:
            raise ResourceNotFoundError(gvk.kind, namespace, name) from e
        return result.to_dict()

    def list_by_label(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str],
        label_selector: str = "",
    ) -> list[Manifest]:
        """
        List resources.

        Args:
            gvk: Resource kind
            namespace: Namespace (ignored for cluster-scoped kinds)
            label_selector: Label selector string (empty for all)

        Returns:
            List of resource manifests, each with apiVersion and kind set
        """
        resource = self.resolve(gvk)
        result = self._call(
            self.dynamic.get,
            resource,
            namespace=self._scope(resource, namespace),
            label_selector=label_selector or None,
        )
        # List items come back without apiVersion/kind
        return [
            {"apiVersion": gvk.api_version, "kind": gvk.kind, **item}
            for item in result.to_dict().get("items") or []
        ]

    def create(self, field_manager: str, obj: Manifest) -> Manifest:
        """
        Create a resource.

        Args:
            field_manager: Field manager recorded for the created fields
            obj: Resource manifest

        Returns:
            Created resource manifest

        Raises:
            ResourceAlreadyExistsError: If the resource already exists
        """
        gvk = GroupVersionKind.from_manifest(obj)
        resource = self.resolve(gvk)
        meta = _metadata(obj)
        namespace = self._scope(resource, meta.get("namespace"))
        try:
            result = self._call(
                self.dynamic.create,
                resource,
                body=obj,
                namespace=namespace,
                field_manager=field_manager,
            )
        except ConflictError as e:
            raise ResourceAlreadyExistsError(gvk.kind, namespace, meta.get("name")) from e
        except NotFoundError as e:
            # Target namespace is missing
            raise ResourceNotFoundError("Namespace", None, namespace or "") from e

        logger.debug(f"Created {gvk.kind} {namespace}/{meta.get('name')}")
        return result.to_dict()

    def replace(
        self,
        field_manager: str,
        gvk: GroupVersionKind,
        namespace: Optional[str],
        name: str,
        transform: Transform,
    ) -> Manifest:
        """
        Replace a resource with optimistic concurrency.

        Reads the current object, passes it to ``transform`` and writes the
        result back tagged with the read's resourceVersion.

        Args:
            field_manager: Field manager recorded for the written fields
            gvk: Resource kind
            namespace: Namespace (ignored for cluster-scoped kinds)
            name: Resource name
            transform: Maps the current manifest to the new manifest

        Returns:
            Replaced resource manifest

        Raises:
            ResourceNotFoundError: If the resource does not exist
            VersionConflictError: If the resource changed since it was read
        """
        current = self.get(gvk, namespace, name)
        resource_version = _metadata(current).get("resourceVersion")

        new_obj = transform(current)
        new_obj = {**new_obj, "metadata": {**_metadata(new_obj)}}
        new_obj["metadata"]["resourceVersion"] = resource_version

        resource = self.resolve(gvk)
        namespace = self._scope(resource, namespace)
        try:
            result = self._call(
                self.dynamic.replace,
                resource,
                body=new_obj,
                name=name,
                namespace=namespace,
                field_manager=field_manager,
            )
        except NotFoundError as e:
            raise ResourceNotFoundError(gvk.kind, namespace, name) from e
        except ConflictError as e:
            raise VersionConflictError(
                f"{gvk.kind} {namespace}/{name} was modified concurrently "
                f"(read resourceVersion {resource_version})"
            ) from e

        logger.debug(f"Replaced {gvk.kind} {namespace}/{name}")
        return result.to_dict()

    def apply(
        self,
        field_manager: str,
        obj: Manifest,
        force_conflicts: bool = False,
    ) -> Manifest:
        """
        Server-side apply a (partial) manifest.

        Args:
            field_manager: Field manager that owns the applied fields
            obj: Manifest containing only the fields to own
            force_conflicts: Take ownership of fields held by other managers

        Returns:
            Resulting resource manifest
        """
        gvk = GroupVersionKind.from_manifest(obj)
        resource = self.resolve(gvk)
        meta = _metadata(obj)
        namespace = self._scope(resource, meta.get("namespace"))
        try:
            result = self._call(
                self.dynamic.server_side_apply,
                resource,
                body=obj,
                name=meta.get("name"),
                namespace=namespace,
                force_conflicts=force_conflicts,
                field_manager=field_manager,
            )
        except NotFoundError as e:
            raise ResourceNotFoundError(gvk.kind, namespace, meta.get("name")) from e
        return result.to_dict()

    def watch(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str],
        label_selector: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        watcher: Optional[k8s_watch.Watch] = None,
    ) -> Iterator[WatchEvent]:
        """
        Stream changes to resources of a kind.

        Args:
            gvk: Resource kind
            namespace: Namespace (ignored for cluster-scoped kinds)
            label_selector: Label selector string
            timeout_seconds: Watch timeout in seconds (None for infinite)
            watcher: Watch handle; call ``stop()`` on it to end the stream

        Yields:
            WatchEvent for every change
        """
        resource = self.resolve(gvk)
        namespace = self._scope(resource, namespace)
        logger.info(f"Starting watch on {gvk.kind} in namespace {namespace}")
        for event in self.dynamic.watch(
            resource,
            namespace=namespace,
            label_selector=label_selector,
            timeout=timeout_seconds,
            watcher=watcher,
        ):
            raw = event.get("raw_object") or {}
            meta = _metadata(raw)
            yield WatchEvent(
                event_type=event["type"],
                kind=gvk.kind,
                name=meta.get("name", ""),
                namespace=meta.get("namespace"),
                object=raw,
            )
