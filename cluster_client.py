import base64
import binascii
import logging
from typing import Dict, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from pydantic import BaseModel

from check_errors import ConfigError, NotFoundError, TransportError

logger = logging.getLogger(__name__)

INFRASTRUCTURE_NAME = "cluster"
VSPHERE_PLATFORM_TYPE = "VSphere"


class Infrastructure(BaseModel):
    cluster_id: str
    platform_type: Optional[str] = None
    cloud_config_name: Optional[str] = None
    cloud_config_key: Optional[str] = None

    @classmethod
    def from_object(cls, obj):
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        cloud_config = spec.get("cloudConfig") or {}
        platform_status = status.get("platformStatus") or {}
        return cls(
            cluster_id=status.get("infrastructureName", ""),
            platform_type=platform_status.get("type") or status.get("platform"),
            cloud_config_name=cloud_config.get("name"),
            cloud_config_key=cloud_config.get("key"),
        )


def load_kube_config(kubeconfig=None):
    try:
        if kubeconfig:
            logger.debug(f"Using kubeconfig {kubeconfig}")
            config.load_kube_config(config_file=kubeconfig)
        else:
            logger.info("Building kube configs for running in cluster...")
            config.load_incluster_config()
    except ConfigException as e:
        raise ConfigError(f"failed to create Kubernetes clients: {e}") from e


class KubeClusterClient:
    """Read-only access to the cluster objects the checks inspect."""

    def __init__(self, api_client=None, timeout=10.0):
        self.timeout = timeout
        self.core = client.CoreV1Api(api_client)
        self.storage = client.StorageV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    def _call(self, what, func, *args, **kwargs):
        try:
            return func(*args, _request_timeout=self.timeout, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"{what} not found") from e
            raise TransportError(f"failed to get {what}: {e.status} {e.reason}") from e
        except (OSError, urllib3.exceptions.HTTPError) as e:
            raise TransportError(f"failed to get {what}: {e}") from e

    def get_infrastructure(self) -> Infrastructure:
        obj = self._call(
            f"Infrastructure {INFRASTRUCTURE_NAME}",
            self.custom.get_cluster_custom_object,
            "config.openshift.io", "v1", "infrastructures", INFRASTRUCTURE_NAME,
        )
        infra = Infrastructure.from_object(obj)
        logger.debug(f"Got Infrastructure with Platform {infra.platform_type!r}")
        return infra

    def get_config_map(self, namespace, name) -> Dict[str, str]:
        cm = self._call(f"ConfigMap {namespace}/{name}", self.core.read_namespaced_config_map, name, namespace)
        return cm.data or {}

    def get_secret(self, namespace, name) -> Dict[str, str]:
        """Return the secret's data, base64-decoded."""
        secret = self._call(f"Secret {namespace}/{name}", self.core.read_namespaced_secret, name, namespace)
        logger.debug(f"Got Secret {namespace}/{name}")
        data = {}
        for key, value in (secret.data or {}).items():
            try:
                data[key] = base64.b64decode(value, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ConfigError(f"Secret {namespace}/{name} has invalid data in key {key}: {e}") from e
        return data

    def list_nodes(self):
        return self._call("Nodes", self.core.list_node).items

    def list_storage_classes(self):
        return self._call("StorageClasses", self.storage.list_storage_class).items

    def list_pvs(self):
        return self._call("PersistentVolumes", self.core.list_persistent_volume).items
