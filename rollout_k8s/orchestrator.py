"""Deployment orchestration: apply application objects and trigger rollouts."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .application import ApplicationDescriptor, find_primary_workload
from .exceptions import ResourceNotFoundError
from .gateway import ResourceGateway
from .models import DEPLOYMENT_GVK, GroupVersionKind
from .tracker import RolloutTracker

logger = logging.getLogger(__name__)

Manifest = dict[str, Any]
ReplaceTransform = Callable[[Manifest, Manifest], Manifest]


def replace_with_desired(current: Manifest, desired: Manifest) -> Manifest:
    """Default replace transform: overwrite the live object with the desired one."""
    return desired


class DeploymentOrchestrator:
    """
    Applies application objects and triggers Deployment rollouts.

    Two field managers are used: ``<prefix>-manager`` owns full application
    objects written by ``deploy_app`` and ``<prefix>-deployer`` owns only the
    redeploy annotation on the pod template, so redeploys never conflict
    with full applies of the same object.
    """

    def __init__(self, gateway: ResourceGateway, prefix: str = "rollout"):
        """
        Initialize deployment orchestrator.

        Args:
            gateway: Resource gateway of the target cluster
            prefix: Prefix for field manager names and the redeploy annotation
        """
        self.gateway = gateway
        self.prefix = prefix
        self._last_redeploy_at: Optional[datetime] = None

    @property
    def manager_name(self) -> str:
        return f"{self.prefix}-manager"

    @property
    def deployer_name(self) -> str:
        return f"{self.prefix}-deployer"

    @property
    def redeploy_annotation(self) -> str:
        return f"{self.deployer_name}/redeployAt"

    def build_redeploy_patch(self, obj: Manifest, now: Optional[datetime] = None) -> Manifest:
        """
        Build the minimal apply configuration that forces a new rollout.

        The annotation value is an RFC 3339 timestamp with microseconds. When
        ``now`` is not given it is strictly later than the previous one, so
        back-to-back patches always differ and each bumps the generation.

        Args:
            obj: Live workload manifest
            now: Timestamp to record (defaults to the current time)

        Returns:
            Manifest holding only identity fields and the redeploy annotation
        """
        meta = obj.get("metadata") or {}
        if now is None:
            now = datetime.now(timezone.utc)
            if self._last_redeploy_at is not None and now <= self._last_redeploy_at:
                now = self._last_redeploy_at + timedelta(microseconds=1)
            self._last_redeploy_at = now
        timestamp = now.astimezone(timezone.utc).isoformat(timespec="microseconds")
        return {
            "apiVersion": obj["apiVersion"],
            "kind": obj["kind"],
            "metadata": {
                "namespace": meta.get("namespace"),
                "name": meta.get("name"),
            },
            "spec": {
                "template": {
                    "metadata": {
                        "annotations": {self.redeploy_annotation: timestamp},
                    },
                },
            },
        }

    async def _redeploy_object(self, obj: Manifest) -> Manifest:
        patch = self.build_redeploy_patch(obj)
        result = await asyncio.to_thread(self.gateway.apply, self.deployer_name, patch)
        meta = result.get("metadata") or {}
        logger.info(
            f"Triggered redeploy of {meta.get('namespace')}/{meta.get('name')} "
            f"(generation {meta.get('generation')})"
        )
        return result

    def _track(self, tracker: Optional[RolloutTracker], workload: Manifest) -> None:
        if tracker is not None:
            tracker.track(self.gateway, workload)

    async def redeploy_app(
        self,
        app: ApplicationDescriptor,
        tracker: Optional[RolloutTracker] = None,
    ) -> Manifest:
        """
        Trigger a fresh rollout of an application's primary Deployment.

        Args:
            app: Application descriptor
            tracker: Tracker to follow the rollout with (optional)

        Returns:
            Deployment manifest after the redeploy patch

        Raises:
            ResourceNotFoundError: If the Deployment does not exist
        """
        deployment = await asyncio.to_thread(
            self.gateway.get, DEPLOYMENT_GVK, app.namespace, app.primary_workload_name
        )
        last = await self._redeploy_object(deployment)
        self._track(tracker, last)
        return last

    async def redeploy_all(
        self,
        namespace: str,
        predicate: Callable[[Manifest], bool],
        tracker: Optional[RolloutTracker] = None,
        label_selector: str = "",
    ) -> list[Manifest]:
        """
        Trigger a fresh rollout of every matching Deployment in a namespace.

        Deployments are patched one at a time; the first error stops the loop.

        Args:
            namespace: Kubernetes namespace
            predicate: Selects the Deployments to redeploy
            tracker: Tracker to follow the rollouts with (optional)
            label_selector: Label selector narrowing the listed Deployments

        Returns:
            Redeployed Deployment manifests
        """
        deployments = await asyncio.to_thread(
            self.gateway.list_by_label, DEPLOYMENT_GVK, namespace, label_selector
        )

        redeployed = []
        for deployment in deployments:
            if not predicate(deployment):
                continue
            last = await self._redeploy_object(deployment)
            self._track(tracker, last)
            redeployed.append(last)

        logger.info(
            f"Redeployed {len(redeployed)} of {len(deployments)} deployments in {namespace}"
        )
        return redeployed

    async def _replace_or_create(
        self,
        obj: Manifest,
        replace_existing: bool,
        transform: ReplaceTransform,
    ) -> Manifest:
        meta = obj.get("metadata") or {}
        if replace_existing:
            try:
                return await asyncio.to_thread(
                    self.gateway.replace,
                    self.manager_name,
                    GroupVersionKind.from_manifest(obj),
                    meta.get("namespace"),
                    meta.get("name"),
                    lambda current: transform(current, obj),
                )
            except ResourceNotFoundError:
                logger.debug(f"{obj.get('kind')} {meta.get('name')} not found, creating")

        return await asyncio.to_thread(self.gateway.create, self.manager_name, obj)

    async def deploy_app(
        self,
        app: ApplicationDescriptor,
        replace_existing: bool,
        tracker: Optional[RolloutTracker] = None,
        transform: ReplaceTransform = replace_with_desired,
    ) -> list[Manifest]:
        """
        Create or replace all objects of an application.

        Objects are written in the order the application produces them. With
        ``replace_existing`` each object is replaced when it exists and
        created otherwise; without it every object is created.

        Args:
            app: Application descriptor
            replace_existing: Replace objects that already exist
            tracker: Tracker to follow the primary Deployment's rollout (optional)
            transform: Builds the replacement from (live, desired) manifests

        Returns:
            Written object manifests, in order

        Raises:
            MissingPrimaryWorkloadError: If the primary Deployment is not
                among the application objects (raised before any write)
            ResourceAlreadyExistsError: If creating an existing object
            VersionConflictError: If an object changed during its replace
        """
        objects = app.desired_objects()
        primary_index = find_primary_workload(
            objects, app.namespace, app.primary_workload_name
        )

        written = []
        for obj in objects:
            written.append(await self._replace_or_create(obj, replace_existing, transform))

        logger.info(
            f"Deployed {len(written)} objects for {app.namespace}/{app.primary_workload_name}"
        )
        self._track(tracker, written[primary_index])
        return written
