import logging
import threading

from check_errors import PathTooLong
from path_escape import default_escaper

logger = logging.getLogger(__name__)

KUBELET_VSPHERE_MOUNT_DIR = "/var/lib/kubelet/plugins/kubernetes.io/vsphere-volume/mounts"
MAX_ESCAPED_PATH_LENGTH = 255

# Fixed UUIDs for a representative dynamically provisioned disk. Only their
# length matters, they match what the in-tree provisioner generates.
PLACEHOLDER_FOLDER_UUID = "5137595f-7ce3-e95a-5c03-06d835dea807"
PLACEHOLDER_PVC_UUID = "8533f1d0-178d-460b-8403-bc5e7dc7f778"


def volume_mount_path(volume_path):
    return f"{KUBELET_VSPHERE_MOUNT_DIR}/{volume_path}"


def placeholder_volume_path(datastore_name, cluster_id):
    """Volume path the provisioner would create for a new PVC on the datastore."""
    return (
        f"[{datastore_name}] {PLACEHOLDER_FOLDER_UUID}/"
        f"{cluster_id}-dynamic-pvc-{PLACEHOLDER_PVC_UUID}.vmdk"
    )


def check_volume_name(volume_path, escaper=None):
    """Raise PathTooLong when kubelet could not mount the volume.

    Kubelet escapes the mount path into a systemd unit name, which must stay
    under MAX_ESCAPED_PATH_LENGTH characters.
    """
    escaper = escaper or default_escaper()
    path = volume_mount_path(volume_path)
    escaped_path = escaper.escape(path)
    if len(escaped_path) >= MAX_ESCAPED_PATH_LENGTH:
        raise PathTooLong(
            f'escaped volume path "{escaped_path}" is too long '
            f"(must be under {MAX_ESCAPED_PATH_LENGTH} characters, got {len(escaped_path)})"
        )


class ValidatedDatastoreSet:
    """Datastore names already checked during one run, with their outcome.

    A name maps to None when it passed, or to the error it failed with.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._results = {}

    def __contains__(self, name):
        with self._lock:
            return name in self._results

    def __len__(self):
        with self._lock:
            return len(self._results)

    def get(self, name):
        with self._lock:
            return self._results.get(name)

    def record(self, name, error=None):
        with self._lock:
            self._results.setdefault(name, error)


class DatastoreValidator:
    def __init__(self, escaper=None, cache=None):
        self.escaper = escaper or default_escaper()
        self.cache = cache if cache is not None else ValidatedDatastoreSet()

    def check_datastore(self, name, cluster_id):
        logger.debug(f"Checking datastore {name!r}")
        if name in self.cache:
            logger.debug(f"Skipping check of already checked datastore {name!r}")
            error = self.cache.get(name)
            if error is not None:
                raise error
            return

        volume_path = placeholder_volume_path(name, cluster_id)
        logger.debug(f"Checking datastore {name!r} with potential volume name {volume_path}")
        try:
            check_volume_name(volume_path, self.escaper)
        except PathTooLong as e:
            error = PathTooLong(f"error checking datastore {name!r}: {e}")
            self.cache.record(name, error)
            raise error from e
        self.cache.record(name)
