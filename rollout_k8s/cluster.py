"""Kubernetes client connection management."""

import base64
import logging
import tempfile
import threading
from pathlib import Path
from typing import Optional

from kubernetes import client, config
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from urllib3.exceptions import HTTPError as TransportError

from .config import Settings
from .models import ClusterConfig

logger = logging.getLogger(__name__)


class ClusterConnection:
    """Represents a connection to a single Kubernetes cluster."""

    def __init__(self, cluster_config: ClusterConfig):
        """
        Initialize cluster connection.

        Args:
            cluster_config: Cluster configuration

        Raises:
            ValueError: If kubeconfig is invalid
        """
        self.config = cluster_config
        self._api_client: Optional[ApiClient] = None
        self._dynamic: Optional[DynamicClient] = None
        self._dynamic_lock = threading.Lock()
        self._temp_kubeconfig: Optional[Path] = None

        self._initialize_client()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClusterConnection":
        """Create a connection from driver settings."""
        return cls(
            ClusterConfig(
                kubeconfig_path=settings.kubeconfig_path,
                kubeconfig_data=settings.kubeconfig_data,
                context=settings.kube_context,
                in_cluster=settings.in_cluster,
            )
        )

    def _initialize_client(self):
        """Initialize Kubernetes API client."""
        configuration = client.Configuration()
        try:
            if self.config.in_cluster:
                config.load_incluster_config(client_configuration=configuration)
            elif self.config.kubeconfig_data:
                # Decode base64 kubeconfig and write to temp file
                kubeconfig_content = base64.b64decode(self.config.kubeconfig_data)
                with tempfile.NamedTemporaryFile(mode="wb", delete=False) as f:
                    f.write(kubeconfig_content)
                    self._temp_kubeconfig = Path(f.name)
                config.load_kube_config(
                    config_file=str(self._temp_kubeconfig),
                    context=self.config.context,
                    client_configuration=configuration,
                )
            else:
                # Falls back to $KUBECONFIG / ~/.kube/config when no path is set
                config.load_kube_config(
                    config_file=self.config.kubeconfig_path,
                    context=self.config.context,
                    client_configuration=configuration,
                )

            self._api_client = ApiClient(configuration)

        except Exception as e:
            self._cleanup_temp_kubeconfig()
            raise ValueError(f"Failed to initialize cluster connection: {e}") from e

        logger.info(f"Initialized connection to cluster {self.config.name}")

    @property
    def api_client(self) -> ApiClient:
        """Get ApiClient instance."""
        if not self._api_client:
            raise RuntimeError("Cluster connection not initialized")
        return self._api_client

    @property
    def dynamic(self) -> DynamicClient:
        """
        Get the dynamic client.

        Created on first use because construction performs API discovery.
        """
        with self._dynamic_lock:
            if self._dynamic is None:
                self._dynamic = DynamicClient(self.api_client)
            return self._dynamic

    def is_healthy(self) -> bool:
        """
        Check if cluster connection is healthy.

        Returns:
            True if cluster is reachable and healthy
        """
        try:
            client.VersionApi(self.api_client).get_code()
            return True
        except (ApiException, TransportError) as e:
            logger.warning(f"Cluster {self.config.name} is unreachable: {e}")
            return False

    def _cleanup_temp_kubeconfig(self):
        if self._temp_kubeconfig and self._temp_kubeconfig.exists():
            self._temp_kubeconfig.unlink()
        self._temp_kubeconfig = None

    def close(self):
        """Close the cluster connection and clean up resources."""
        if self._api_client:
            self._api_client.close()
            self._api_client = None

        self._cleanup_temp_kubeconfig()
        self._dynamic = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
