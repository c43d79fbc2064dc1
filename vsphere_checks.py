import logging
import time
from typing import List, Optional

from pydantic import BaseModel

from check_errors import (
    AggregateError,
    CheckError,
    DatastoreFileNotFound,
    MissingCapability,
    NotFoundError,
    with_context,
)
from placement import resolve_compatible_datastores
from volume_checks import DatastoreValidator, ValidatedDatastoreSet, check_volume_name

logger = logging.getLogger(__name__)

VSPHERE_PROVISIONER = "kubernetes.io/vsphere-volume"
VSPHERE_PROVIDER_PREFIX = "vsphere://"
DATASTORE_PARAMETER = "datastore"
STORAGE_POLICY_PARAMETER = "storagepolicyname"
KUBEVOLS_PATH = "/kubevols"


class CheckResult(BaseModel):
    name: str
    passed: bool
    message: Optional[str] = None
    duration_seconds: float = 0.0


def check_task_permissions(session):
    """Enumerating tasks fails when the vSphere account lacks task manager privileges."""
    logger.debug("CheckTaskPermissions started")
    tasks = session.collect_tasks()
    for task in tasks:
        logger.debug(f"Found task {getattr(task, 'name', task)}")
    logger.info(f"CheckTaskPermissions succeeded, {len(tasks)} tasks found")


def _list_directory(session, datastore, datastore_name, path, tolerate_not_found):
    logger.debug(f"Listing datastore {datastore_name} path {path}")
    try:
        files = session.search_datastore(datastore, path)
    except DatastoreFileNotFound:
        if not tolerate_not_found:
            raise
        logger.warning(f"Path {path} does not exist in Datastore {datastore_name}")
        return
    for f in files:
        logger.debug(f"Found file {path}/{f}")


def check_folder_list(session, config):
    """The account must be able to browse the default datastore."""
    logger.debug("CheckFolderList started")
    datacenter = session.find_datacenter(config.datacenter)
    datastore = session.find_datastore(datacenter, config.default_datastore)

    # "/" always exists, "/kubevols" only once a volume was provisioned
    _list_directory(session, datastore, config.default_datastore, "/", tolerate_not_found=False)
    _list_directory(session, datastore, config.default_datastore, KUBEVOLS_PATH, tolerate_not_found=True)
    logger.info(f"Listing Datastore {config.default_datastore!r} succeeded")


def _vm_uuid(provider_id):
    return provider_id[len(VSPHERE_PROVIDER_PREFIX):].strip().lower()


def check_node(node, session, datacenter):
    name = node.metadata.name
    logger.debug(f"Checking node {name!r}")
    provider_id = node.spec.provider_id if node.spec else None
    if not provider_id:
        raise MissingCapability("the node has no providerID")
    logger.debug(f"... the node has providerID: {provider_id}")
    if not provider_id.startswith(VSPHERE_PROVIDER_PREFIX):
        raise MissingCapability(f"the node's providerID does not start with {VSPHERE_PROVIDER_PREFIX}")

    vm_uuid = _vm_uuid(provider_id)
    vm = session.find_vm_by_uuid(datacenter, vm_uuid)
    if vm is None:
        raise NotFoundError(f"unable to find VM by UUID {vm_uuid}")

    enabled = session.disk_uuid_enabled(vm)
    if enabled is None:
        raise MissingCapability(f"node {name!r} has empty disk.enableUUID")
    if not enabled:
        raise MissingCapability(f"node {name!r} has disk.enableUUID = FALSE")
    logger.debug("... the node has correct disk.enableUUID")


def check_nodes(cluster, session, config):
    """Every node must run with the vSphere cloud provider on a VM with disk.enableUUID."""
    logger.debug("CheckNodes started")
    nodes = cluster.list_nodes()
    datacenter = session.find_datacenter(config.datacenter)

    bad_nodes = 0
    for node in nodes:
        try:
            check_node(node, session, datacenter)
        except CheckError as e:
            bad_nodes += 1
            logger.info(f"Error on node {node.metadata.name!r}: {e}")

    if bad_nodes:
        raise MissingCapability(f"{bad_nodes} nodes have issues")
    logger.info(f"CheckNodes succeeded, {len(nodes)} nodes checked")


def check_default_datastore(cluster, config, datastore_validator):
    logger.debug("CheckDefaultDatastore started")
    infra = cluster.get_infrastructure()
    name = config.default_datastore
    try:
        datastore_validator.check_datastore(name, infra.cluster_id)
    except CheckError as e:
        raise with_context(e, f"default datastore {name!r} is invalid") from e
    logger.info("CheckDefaultDatastore succeeded")


def _check_storage_policy(session, policy_name, cluster_id, datastore_validator):
    logger.debug(f"Checking storage policy {policy_name!r}")
    datastores = resolve_compatible_datastores(session, policy_name)

    errors = []
    for datastore in datastores:
        try:
            datastore_validator.check_datastore(datastore, cluster_id)
        except CheckError as e:
            errors.append(with_context(e, f"storage policy {policy_name!r}"))
    error = AggregateError.from_errors(errors)
    if error:
        raise error


def check_storage_classes(cluster, session, config, datastore_validator):
    """Datastores a vSphere storage class can provision on must have short enough names."""
    logger.debug("CheckStorageClasses started")
    infra = cluster.get_infrastructure()
    storage_classes = cluster.list_storage_classes()

    errors = []
    for sc in storage_classes:
        sc_name = sc.metadata.name
        if sc.provisioner != VSPHERE_PROVISIONER:
            logger.debug(f"Skipping storage class {sc_name!r}: not a vSphere class")
            continue

        for key, value in (sc.parameters or {}).items():
            try:
                if key.lower() == DATASTORE_PARAMETER:
                    datastore_validator.check_datastore(value, infra.cluster_id)
                elif key.lower() == STORAGE_POLICY_PARAMETER:
                    _check_storage_policy(session, value, infra.cluster_id, datastore_validator)
            except CheckError as e:
                errors.append(with_context(e, f"StorageClass {sc_name!r} is invalid"))

    error = AggregateError.from_errors(errors)
    if error:
        raise error
    logger.info(f"CheckStorageClasses succeeded, {len(storage_classes)} storage classes checked")


def check_pvs(cluster, escaper=None):
    """Existing vSphere PVs must have volume paths kubelet can mount."""
    logger.debug("CheckPVs started")
    pvs = cluster.list_pvs()

    errors = []
    for pv in pvs:
        source = pv.spec.vsphere_volume if pv.spec else None
        if source is None:
            continue
        logger.debug(f"Checking PV {pv.metadata.name!r}: {source.volume_path}")
        try:
            check_volume_name(source.volume_path, escaper)
        except CheckError as e:
            errors.append(with_context(e, f"error checking PV {pv.metadata.name!r}"))

    error = AggregateError.from_errors(errors)
    if error:
        raise error
    logger.info(f"CheckPVs succeeded, {len(pvs)} PVs checked")


def _run_check(name, check, *args) -> CheckResult:
    start = time.monotonic()
    try:
        check(*args)
    except Exception as e:
        logger.debug(f"Check {name} failed", exc_info=True)
        return CheckResult(name=name, passed=False, message=str(e), duration_seconds=time.monotonic() - start)
    return CheckResult(name=name, passed=True, duration_seconds=time.monotonic() - start)


def run_all_checks(cluster, session, config, escaper=None, cache=None) -> List[CheckResult]:
    """Run every check in order; a failing check never stops the following ones.

    A new ValidatedDatastoreSet is used unless one is passed in, so datastores
    are validated at most once within this run.
    """
    cache = cache if cache is not None else ValidatedDatastoreSet()
    datastore_validator = DatastoreValidator(escaper=escaper, cache=cache)
    checks = [
        ("TaskPermissions", check_task_permissions, session),
        ("FolderList", check_folder_list, session, config),
        ("Nodes", check_nodes, cluster, session, config),
        ("DefaultDatastore", check_default_datastore, cluster, config, datastore_validator),
        ("StorageClasses", check_storage_classes, cluster, session, config, datastore_validator),
        ("PVs", check_pvs, cluster, escaper),
    ]
    return [_run_check(name, check, *args) for name, check, *args in checks]
