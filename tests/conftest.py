"""Fakes for the cluster and vSphere session consumed by the checks."""

from types import SimpleNamespace

import pytest
from kubernetes import client

from check_errors import DatastoreFileNotFound, NotFoundError
from cloud_config import VSphereConfig
from cluster_client import Infrastructure

SHORT_CLUSTER_ID = "ocp-4jxq8"
LONG_CLUSTER_ID = "openshift-cluster-x7k2p"


def make_node(name, provider_id=None):
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1NodeSpec(provider_id=provider_id),
    )


def make_storage_class(name, parameters=None, provisioner="kubernetes.io/vsphere-volume"):
    return client.V1StorageClass(
        metadata=client.V1ObjectMeta(name=name),
        provisioner=provisioner,
        parameters=parameters,
    )


def make_pv(name, volume_path=None):
    source = client.V1VsphereVirtualDiskVolumeSource(volume_path=volume_path) if volume_path else None
    return client.V1PersistentVolume(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1PersistentVolumeSpec(vsphere_volume=source),
    )


def make_profile(name, unique_id):
    return SimpleNamespace(name=name, profileId=SimpleNamespace(uniqueId=unique_id))


class FakeCluster:
    def __init__(self, nodes=(), storage_classes=(), pvs=(), cluster_id=SHORT_CLUSTER_ID,
                 platform_type="VSphere", config_maps=None, secrets=None):
        self.nodes = list(nodes)
        self.storage_classes = list(storage_classes)
        self.pvs = list(pvs)
        self.infrastructure = Infrastructure(
            cluster_id=cluster_id,
            platform_type=platform_type,
            cloud_config_name="cloud-provider-config",
            cloud_config_key="config",
        )
        self.config_maps = config_maps or {}
        self.secrets = secrets or {}

    def get_infrastructure(self):
        return self.infrastructure

    def get_config_map(self, namespace, name):
        try:
            return self.config_maps[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"ConfigMap {namespace}/{name} not found") from None

    def get_secret(self, namespace, name):
        try:
            return self.secrets[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"Secret {namespace}/{name} not found") from None

    def list_nodes(self):
        return self.nodes

    def list_storage_classes(self):
        return self.storage_classes

    def list_pvs(self):
        return self.pvs


class FakeSession:
    """In-memory stand-in for VSphereSession.

    errors maps a method name to the exception it raises.
    """

    def __init__(self, datacenters=("DC1",), datastores=None, files=None, tasks=(), vms=None,
                 profiles=(), profiles_by_id=None, compatible=None, errors=None):
        self.datacenters = set(datacenters)
        self.datastores = datastores if datastores is not None else {"datastore-1": "ds1"}
        self.files = files if files is not None else {"/": ["vm-1"], "/kubevols": []}
        self.tasks = list(tasks)
        self.vms = vms or {}
        self.profiles = list(profiles)
        self.profiles_by_id = profiles_by_id or {}
        self.compatible = compatible or {}
        self.errors = errors or {}
        self.calls = []

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        if method in self.errors:
            raise self.errors[method]

    def find_datacenter(self, name):
        self._record("find_datacenter", name)
        if name not in self.datacenters:
            raise NotFoundError(f"datacenter {name!r} not found")
        return SimpleNamespace(name=name)

    def find_datastore(self, datacenter, name):
        self._record("find_datastore", name)
        if name not in self.datastores.values():
            raise NotFoundError(f"datastore {name!r} not found in datacenter {datacenter.name!r}")
        return SimpleNamespace(name=name)

    def search_datastore(self, datastore, path):
        self._record("search_datastore", path)
        if path not in self.files:
            raise DatastoreFileNotFound(f"path {path} does not exist in Datastore {datastore.name}")
        return self.files[path]

    def collect_tasks(self):
        self._record("collect_tasks")
        return self.tasks

    def find_vm_by_uuid(self, datacenter, uuid):
        self._record("find_vm_by_uuid", uuid)
        if uuid not in self.vms:
            return None
        return SimpleNamespace(uuid=uuid)

    def disk_uuid_enabled(self, vm):
        self._record("disk_uuid_enabled", vm.uuid)
        return self.vms[vm.uuid]

    def list_datastores(self):
        self._record("list_datastores")
        return dict(self.datastores)

    def retrieve_storage_profiles(self):
        self._record("retrieve_storage_profiles")
        return list(self.profiles)

    def retrieve_profiles_by_id(self, unique_ids):
        self._record("retrieve_profiles_by_id", tuple(unique_ids))
        return [self.profiles_by_id[i] for i in unique_ids if i in self.profiles_by_id]

    def compatible_hub_ids(self, profile_id, datastore_ids):
        self._record("compatible_hub_ids", profile_id.uniqueId, tuple(datastore_ids))
        return list(self.compatible.get(profile_id.uniqueId, []))

    def close(self):
        self.calls.append(("close",))

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


@pytest.fixture
def vsphere_config():
    return VSphereConfig(server="vcenter.example.com", datacenter="DC1", default_datastore="ds1")


@pytest.fixture
def session():
    return FakeSession()
