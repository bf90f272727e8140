"""Command line entry point for the rollout driver."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import yaml
from kubernetes.client.exceptions import ApiException

from . import __version__
from .application import ManifestApplication, StaticApplication
from .cluster import ClusterConnection
from .config import Settings, get_settings
from .exceptions import RolloutK8sError
from .gateway import ResourceGateway
from .models import RolloutEvent
from .orchestrator import DeploymentOrchestrator
from .tracker import RolloutTracker

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="rollout-k8s",
        description="Apply applications and track Deployment rollouts",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("-n", "--namespace", help="Kubernetes namespace")
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Return after triggering the rollout without tracking it",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=None,
        help="Report more rollout progress (repeat for more)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    redeploy = subparsers.add_parser("redeploy", help="Redeploy one Deployment")
    redeploy.add_argument("name", help="Deployment name")

    redeploy_all = subparsers.add_parser(
        "redeploy-all", help="Redeploy every matching Deployment in the namespace"
    )
    redeploy_all.add_argument("-l", "--selector", default="", help="Label selector")
    redeploy_all.add_argument("--name-prefix", default="", help="Only names with this prefix")

    deploy = subparsers.add_parser("deploy", help="Create or replace application objects")
    deploy.add_argument("name", help="Primary Deployment name")
    deploy.add_argument(
        "-f",
        "--filename",
        action="append",
        required=True,
        help="Manifest file (repeatable)",
    )
    deploy.add_argument(
        "--replace",
        action="store_true",
        help="Replace existing objects instead of failing on them",
    )

    return parser


class Application:
    """Runs one command against the cluster."""

    def __init__(self, settings: Settings, args: argparse.Namespace):
        """
        Initialize application.

        Args:
            settings: Driver settings
            args: Parsed command line arguments
        """
        self.settings = settings
        self.args = args
        self.namespace = args.namespace or settings.default_namespace
        self.tracker: Optional[RolloutTracker] = None
        self._cancel_task: Optional[asyncio.Task] = None

    def handle_signal(self, sig: int) -> None:
        """
        Handle shutdown signals.

        Args:
            sig: Signal number
        """
        logger.info(f"Received signal {sig}, cancelling rollout tracking...")
        if self.tracker and self._cancel_task is None:
            self._cancel_task = asyncio.ensure_future(self.tracker.cancel_all())

    async def _dispatch(self, orchestrator: DeploymentOrchestrator) -> None:
        args = self.args
        if args.command == "redeploy":
            app = StaticApplication(self.namespace, args.name, [])
            await orchestrator.redeploy_app(app, self.tracker)
        elif args.command == "redeploy-all":
            prefix = args.name_prefix
            await orchestrator.redeploy_all(
                self.namespace,
                lambda d: d.get("metadata", {}).get("name", "").startswith(prefix),
                self.tracker,
                label_selector=args.selector,
            )
        elif args.command == "deploy":
            app = ManifestApplication(self.namespace, args.name, args.filename)
            await orchestrator.deploy_app(app, args.replace, self.tracker)

    async def run(self) -> int:
        """
        Run the command.

        Returns:
            Process exit code
        """
        if not self.args.no_wait:
            self.tracker = RolloutTracker.from_settings(self.settings)

        try:
            cluster = ClusterConnection.from_settings(self.settings)
        except ValueError as e:
            logger.error(f"{self.args.command} failed: {e}")
            return 1

        with cluster:
            if not await asyncio.to_thread(cluster.is_healthy):
                logger.error(f"{self.args.command} failed: cluster is not reachable")
                return 1

            gateway = ResourceGateway(
                cluster.dynamic, retry_attempts=self.settings.gateway_retry_attempts
            )
            orchestrator = DeploymentOrchestrator(gateway, prefix=self.settings.prefix)

            try:
                await self._dispatch(orchestrator)
            except (RolloutK8sError, ApiException, OSError, ValueError, yaml.YAMLError) as e:
                logger.error(f"{self.args.command} failed: {e}")
                if self.tracker:
                    await self.tracker.cancel_all()
                return 1

            if not self.tracker:
                return 0

            failed = 0
            async for event in self.tracker.drain():
                log_event(event)
                if event.done and not event.succeeded:
                    failed += 1
            return 1 if failed else 0


def log_event(event: RolloutEvent) -> None:
    """Log a rollout event."""
    target = f"{event.namespace}/{event.name}"
    if not event.done:
        replicas = ""
        if event.status:
            replicas = (
                f" (updated {event.status.updated_replicas}, "
                f"ready {event.status.ready_replicas}/{event.status.desired_replicas})"
            )
        logger.info(f"{target}: {event.phase.name}{replicas}")
    elif event.succeeded:
        logger.info(f"✓ {target} rolled out")
    elif event.error:
        logger.error(f"✗ {target} failed in {event.phase.name}: {event.error}")
    else:
        logger.warning(f"✗ {target} {event.reason.value} in {event.phase.name}")


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    if args.verbose is not None:
        settings = settings.model_copy(update={"verbosity": args.verbose})

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = Application(settings, args)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.handle_signal, sig)

    return await app.run()


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
