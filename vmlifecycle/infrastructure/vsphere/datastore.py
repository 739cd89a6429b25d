"""
Datastore directory management
"""

import logging
import posixpath
import threading
from typing import Optional

from pyVmomi import vim

from ...exceptions import RemoteFaultError


logger = logging.getLogger(__name__)

# Shared by every creator in the process unless one is handed its own lock
DIRECTORY_LOCK = threading.Lock()


def datastore_path(datastore, path: str = '') -> str:
    """Format a datastore path as '[name] path'"""
    return f"[{datastore.name}] {path}".rstrip()


def split_datastore_path(file_name: str):
    """Split '[name] some/path.vmdk' into ('name', 'some/path.vmdk')"""
    if not file_name or not file_name.startswith('['):
        return None, file_name
    name, _, rest = file_name[1:].partition(']')
    return name, rest.strip()


class DatastoreDirectoryCreator:
    """Creates parent directories for disk files on a datastore"""

    def __init__(self, client, lock: Optional[threading.Lock] = None):
        self.client = client
        # Concurrent disk creation can race on the same parent directory.
        self.lock = lock or DIRECTORY_LOCK

    def ensure_parent(self, datastore, path: str, datacenter=None) -> Optional[str]:
        """
        Make sure the directory holding path exists on datastore

        Returns:
            The datastore path of the directory, or None when path has no
            parent directory
        """
        parent = posixpath.dirname(path.strip('/'))
        if not parent:
            return None

        directory = datastore_path(datastore, parent)
        with self.lock:
            try:
                self.client.content.fileManager.MakeDirectory(
                    name=directory,
                    datacenter=datacenter,
                    createParentDirectories=True,
                )
                logger.debug(f"Created datastore directory {directory}")
            except vim.fault.FileAlreadyExists:
                logger.debug(f"Datastore directory {directory} already exists")
            except vim.fault.FileFault as e:
                raise RemoteFaultError(
                    f"Failed to create directory {directory}: {e.msg}",
                    details={'fault': e._wsdlName},
                ) from e
        return directory
