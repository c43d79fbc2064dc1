import http.client
import logging
import ssl
import time
from contextlib import contextmanager

from pyVim import connect
from pyVmomi import SoapStubAdapter, VmomiSupport, pbm, vim, vmodl

from check_errors import CheckError, CheckTimeout, DatastoreFileNotFound, NotFoundError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_PORT = 443
TASK_POLL_INTERVAL = 0.5
MAX_TASKS_COLLECTED = 500


def safe_get(obj, attr_path, default=None):
    """Safely get a nested attribute from an already retrieved data object."""
    try:
        current = obj
        for attr in attr_path.split('.'):
            if current is None:
                return default
            current = getattr(current, attr)
        return current if current is not None else default
    except AttributeError:
        return default


def fault_message(error):
    msg = getattr(error, 'msg', None)
    if msg:
        return f"{error.__class__.__name__}: {msg}"
    return f"{error.__class__.__name__}: {error}"


@contextmanager
def vsphere_call(action):
    """Turn pyVmomi faults and connection failures into TransportError."""
    try:
        yield
    except CheckError:
        raise
    except (vmodl.MethodFault, OSError, http.client.HTTPException) as e:
        raise TransportError(f"{action}: {fault_message(e)}") from e


def datastore_path(datastore_name, path):
    return f"[{datastore_name}] {path}"


def _ssl_context(insecure):
    if insecure and hasattr(ssl, "_create_unverified_context"):
        return ssl._create_unverified_context()
    return None


def connect_pbm(si, timeout=DEFAULT_TIMEOUT, insecure=False):
    """Open the storage policy (SPBM) endpoint reusing the vCenter session."""
    stub = si._stub
    cookie_parts = (stub.cookie or "").split('"')
    if len(cookie_parts) < 3:
        raise TransportError("unexpected vCenter session cookie, cannot reuse it for the storage policy service")
    VmomiSupport.GetRequestContext()["vcSessionCookie"] = cookie_parts[1]
    hostname, _, port = stub.host.rpartition(":")
    if not hostname or not port.isdigit():
        hostname, port = stub.host, DEFAULT_PORT
    pbm_stub = SoapStubAdapter(
        host=hostname,
        port=int(port),
        version="pbm.version.version1",
        path="/pbm/sdk",
        poolSize=0,
        sslContext=_ssl_context(insecure),
        httpConnectionTimeout=timeout,
    )
    pbm_si = pbm.ServiceInstance("ServiceInstance", pbm_stub)
    return pbm_si.RetrieveContent()


def connect_vsphere(config, username, password, timeout=DEFAULT_TIMEOUT):
    host = config.server
    logger.debug(f"Connecting to {host}:{config.port} as {username}, insecure {config.insecure}")
    with vsphere_call(f"failed to connect to {host}"):
        try:
            si = connect.SmartConnect(
                host=host,
                user=username,
                pwd=password,
                port=config.port,
                sslContext=_ssl_context(config.insecure),
                httpConnectionTimeout=timeout,
            )
        except vim.fault.InvalidLogin as e:
            raise TransportError(f"invalid login credentials for {host}: {e.msg}") from e
    logger.info(f"Connected to {host} as {username}")
    return VSphereSession(si, timeout=timeout, insecure=config.insecure)


class VSphereSession:
    """A live vCenter session and the calls the checks make through it.

    Every SOAP call is bounded by the connection timeout; task waits are
    bounded by the same value.
    """

    def __init__(self, si, timeout=DEFAULT_TIMEOUT, insecure=False, pbm_content=None):
        self.si = si
        self.timeout = timeout
        self.insecure = insecure
        self._pbm_content = pbm_content

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        if self.si is not None:
            logger.debug("Disconnecting from vCenter Server")
            connect.Disconnect(self.si)
            self.si = None

    @property
    def content(self):
        return self.si.content

    @property
    def pbm_content(self):
        if self._pbm_content is None:
            with vsphere_call("failed to connect to the storage policy service"):
                self._pbm_content = connect_pbm(self.si, self.timeout, self.insecure)
        return self._pbm_content

    def _wait_for_task(self, task, action):
        deadline = time.monotonic() + self.timeout
        while True:
            info = task.info
            if info.state == vim.TaskInfo.State.success:
                return info.result
            if info.state == vim.TaskInfo.State.error:
                raise info.error
            if time.monotonic() >= deadline:
                raise CheckTimeout(f"{action}: task did not finish within {self.timeout}s")
            time.sleep(TASK_POLL_INTERVAL)

    def find_datacenter(self, name):
        content = self.content
        dc_view = None
        with vsphere_call(f"failed to access Datacenter {name}"):
            try:
                dc_view = content.viewManager.CreateContainerView(content.rootFolder, [vim.Datacenter], True)
                for dc in dc_view.view:
                    if dc.name == name:
                        return dc
            finally:
                if dc_view:
                    dc_view.Destroy()
        raise NotFoundError(f"datacenter {name!r} not found")

    def find_datastore(self, datacenter, name):
        with vsphere_call(f"failed to access Datastore {name}"):
            for ds in datacenter.datastore:
                if ds.name == name:
                    return ds
        raise NotFoundError(f"datastore {name!r} not found in datacenter {datacenter.name!r}")

    def search_datastore(self, datastore, path):
        """List files at path on the datastore, raising DatastoreFileNotFound if it is absent."""
        with vsphere_call(f"failed to browse Datastore {datastore.name}"):
            spec = vim.host.DatastoreBrowser.SearchSpec(matchPattern=["*"])
            try:
                task = datastore.browser.SearchDatastore_Task(
                    datastorePath=datastore_path(datastore.name, path), searchSpec=spec
                )
                result = self._wait_for_task(task, f"listing {path} on Datastore {datastore.name}")
            except vim.fault.FileNotFound as e:
                raise DatastoreFileNotFound(f"path {path} does not exist in Datastore {datastore.name}") from e

        results = result if isinstance(result, list) else [result]
        files = []
        for item in results:
            for f in safe_get(item, 'file', []):
                files.append(f.path)
        return files

    def collect_tasks(self):
        content = self.content
        tasks = []
        collector = None
        with vsphere_call("error collecting tasks"):
            try:
                collector = content.taskManager.CreateCollectorForTasks(filter=vim.TaskFilterSpec())
                collector.RewindCollector()
                while len(tasks) < MAX_TASKS_COLLECTED:
                    page = collector.ReadNextTasks(maxCount=100)
                    if not page:
                        break
                    tasks.extend(page)
            finally:
                if collector:
                    collector.DestroyCollector()
        return tasks

    def find_vm_by_uuid(self, datacenter, uuid):
        with vsphere_call(f"failed to find VM by UUID {uuid}"):
            return self.content.searchIndex.FindByUuid(datacenter=datacenter, uuid=uuid, vmSearch=True)

    def disk_uuid_enabled(self, vm):
        """Return the VM's disk.enableUUID flag, None when it is not set."""
        with vsphere_call("failed to load VM config"):
            config = vm.config
        return safe_get(config, 'flags.diskUuidEnabled')

    def list_datastores(self):
        """Map the managed object id of every datastore in vCenter to its name."""
        content = self.content
        ds_view = None
        with vsphere_call("failed to list datastores"):
            try:
                ds_view = content.viewManager.CreateContainerView(content.rootFolder, [vim.Datastore], True)
                traversal_spec = vim.PropertyCollector.TraversalSpec(
                    name="viewTraversal", type=vim.view.ContainerView, path="view", skip=False
                )
                obj_spec = vim.PropertyCollector.ObjectSpec(obj=ds_view, selectSet=[traversal_spec], skip=True)
                prop_spec = vim.PropertyCollector.PropertySpec(type=vim.Datastore, pathSet=["name"], all=False)
                filter_spec = vim.PropertyCollector.FilterSpec(objectSet=[obj_spec], propSet=[prop_spec])
                objects = content.propertyCollector.RetrieveContents([filter_spec])
            finally:
                if ds_view:
                    ds_view.Destroy()
        names = {}
        for obj_content in objects or []:
            for prop in obj_content.propSet:
                if prop.name == "name":
                    names[obj_content.obj._moId] = prop.val
        return names

    def retrieve_storage_profiles(self):
        with vsphere_call("error listing storage policies"):
            pm = self.pbm_content.profileManager
            profile_ids = pm.PbmQueryProfile(
                resourceType=pbm.profile.ResourceType(resourceType="STORAGE"), profileCategory="REQUIREMENT"
            )
            if not profile_ids:
                return []
            return list(pm.PbmRetrieveContent(profileIds=profile_ids))

    def retrieve_profiles_by_id(self, unique_ids):
        with vsphere_call("error retrieving storage policies"):
            pm = self.pbm_content.profileManager
            ids = [pbm.profile.ProfileId(uniqueId=unique_id) for unique_id in unique_ids]
            try:
                return list(pm.PbmRetrieveContent(profileIds=ids))
            except (pbm.fault.NotFound, vmodl.fault.InvalidArgument) as e:
                logger.debug(f"No storage policy with id {unique_ids}: {fault_message(e)}")
                return []

    def compatible_hub_ids(self, profile_id, datastore_ids):
        """Ask SPBM which of the datastores satisfy the profile, in the order it reports them."""
        hubs = [pbm.placement.PlacementHub(hubType="Datastore", hubId=moid) for moid in datastore_ids]
        requirement = pbm.placement.CapabilityProfileRequirement(profileId=profile_id)
        with vsphere_call("error checking storage policy placement"):
            results = self.pbm_content.placementSolver.PbmCheckRequirements(
                hubsToSearch=hubs, placementSubjectRequirement=[requirement]
            )
        return [result.hub.hubId for result in results if not result.error]
