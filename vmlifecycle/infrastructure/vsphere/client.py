"""
vSphere Client wrapper for VM lifecycle management
"""

import ssl
import atexit
import logging
import time
from typing import Optional, Dict, Any, List, Sequence
from pyVim import connect
from pyVmomi import vim, vmodl
from ...exceptions import (
    ConnectionError,
    AuthenticationError,
    NotFoundError,
    VMNotFoundError,
    RemoteFaultError,
    TimeoutError,
)


logger = logging.getLogger(__name__)

# Inventory kinds accepted by resolve()
KINDS = {
    'VirtualMachine': vim.VirtualMachine,
    'Datacenter': vim.Datacenter,
    'Datastore': vim.Datastore,
    'Folder': vim.Folder,
    'HostSystem': vim.HostSystem,
    'Network': vim.Network,
    'ResourcePool': vim.ResourcePool,
    'ComputeResource': vim.ComputeResource,
}


class EventStream:
    """Event subscription scoped to one managed entity"""

    def __init__(self, collector):
        self.collector = collector
        self.closed = False

    def read(self, max_count: int = 100) -> List[Any]:
        """Return events that arrived since the last read"""
        if self.closed:
            return []
        return list(self.collector.ReadNextEvents(maxCount=max_count) or [])

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.collector.DestroyCollector()
        except vmodl.fault.ManagedObjectNotFound:
            logger.debug("Event collector already gone")


class VSphereClient:
    """vSphere API client for VM operations"""

    def __init__(self, host: str, username: str, password: str, port: int = 443,
                 disable_ssl_verification: bool = False,
                 task_timeout: Optional[float] = None,
                 task_poll_interval: float = 1.0):
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.disable_ssl_verification = disable_ssl_verification
        self.task_timeout = task_timeout
        self.task_poll_interval = task_poll_interval
        self._service_instance = None
        self._content = None

    def connect(self) -> None:
        """Establish connection to vSphere"""
        try:
            context = None
            if self.disable_ssl_verification:
                # Lab environments may need unverified SSL context
                context = ssl._create_unverified_context()  # nosec B323

            self._service_instance = connect.SmartConnect(
                host=self.host,
                user=self.username,
                pwd=self.password,
                port=self.port,
                sslContext=context
            )

            atexit.register(connect.Disconnect, self._service_instance)
            self._content = self._service_instance.RetrieveContent()
            logger.debug(f"Connected to vSphere {self.host}")

        except vim.fault.InvalidLogin as e:
            raise AuthenticationError(f"Failed to authenticate to vSphere {self.host}") from e
        except Exception as e:
            raise ConnectionError(f"Failed to connect to vSphere: {str(e)}") from e

    def disconnect(self) -> None:
        """Disconnect from vSphere"""
        if self._service_instance:
            connect.Disconnect(self._service_instance)
            self._service_instance = None
            self._content = None

    @property
    def content(self):
        """Get vSphere content object"""
        if not self._content:
            raise ConnectionError("Not connected to vSphere")
        return self._content

    def get_obj(self, vimtype: List, name: str) -> Optional[Any]:
        """Get vSphere object by name"""
        obj = None
        container = self.content.viewManager.CreateContainerView(
            self.content.rootFolder, vimtype, True)

        for c in container.view:
            if c.name == name:
                obj = c
                break

        container.Destroy()
        return obj

    def get_obj_by_moid(self, vimtype, moid: str) -> Optional[Any]:
        """Get vSphere object by managed object id"""
        obj = None
        container = self.content.viewManager.CreateContainerView(
            self.content.rootFolder, [vimtype], True)

        for c in container.view:
            if c._moId == moid:
                obj = c
                break

        container.Destroy()
        return obj

    def resolve(self, kind: str, id_or_path: str):
        """
        Resolve an inventory object handle

        Virtual machines resolve by instance UUID first. Every kind then
        tries an inventory path, a managed object id and finally a name.

        Raises:
            NotFoundError: If nothing matches (VMNotFoundError for VMs)
        """
        if kind not in KINDS:
            raise ValueError(f"Unknown inventory kind: {kind}")
        vimtype = KINDS[kind]
        not_found = VMNotFoundError if kind == 'VirtualMachine' else NotFoundError
        if not id_or_path:
            raise not_found(f"{kind} reference is empty")

        obj = None
        if kind == 'VirtualMachine':
            obj = self.content.searchIndex.FindByUuid(None, id_or_path, True, True)
        if obj is None and '/' in id_or_path:
            obj = self.content.searchIndex.FindByInventoryPath(id_or_path)
            if obj is not None and not isinstance(obj, vimtype):
                obj = None
        if obj is None:
            obj = self.get_obj_by_moid(vimtype, id_or_path)
        if obj is None:
            obj = self.get_obj([vimtype], id_or_path)
        if obj is None:
            raise not_found(f"{kind} '{id_or_path}' not found", details={'kind': kind})
        return obj

    def properties(self, handle, paths: Sequence[str]) -> Dict[str, Any]:
        """Read dotted property paths off a managed object"""
        result = {}
        try:
            for path in paths:
                value = handle
                for part in path.split('.'):
                    value = getattr(value, part, None) if value is not None else None
                result[path] = value
        except vmodl.fault.ManagedObjectNotFound as e:
            raise NotFoundError(f"Object {handle} no longer exists") from e
        return result

    def wait_for_task(self, task, timeout: Optional[float] = None) -> Any:
        """
        Wait for vSphere task to complete

        Args:
            task: The task to wait on
            timeout: Seconds to wait; defaults to the client's task timeout

        Returns:
            The task result

        Raises:
            RemoteFaultError: If the task ends in error
            TimeoutError: If the deadline passes first; the task keeps running
        """
        timeout = self.task_timeout if timeout is None else timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        while task.info.state not in [vim.TaskInfo.State.success,
                                      vim.TaskInfo.State.error]:
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Timeout waiting for task {task.info.descriptionId or task.info.key}",
                    details={'task': task.info.key},
                )
            time.sleep(self.task_poll_interval)

        if task.info.state == vim.TaskInfo.State.error:
            error = task.info.error
            message = getattr(error, 'localizedMessage', None) or getattr(error, 'msg', None) or str(error)
            raise RemoteFaultError(
                f"Task failed: {message}",
                details={'task': task.info.key, 'fault': getattr(error, '_wsdlName', type(error).__name__)},
            )

        return task.info.result

    def subscribe_events(self, handle, event_type_ids: Sequence[str]) -> EventStream:
        """Open an event stream for one entity and a set of event types"""
        entity_filter = vim.event.EventFilterSpec.ByEntity(entity=handle, recursion='self')
        event_filter = vim.event.EventFilterSpec(entity=entity_filter, eventTypeId=list(event_type_ids))
        collector = self.content.eventManager.CreateCollectorForEvents(filter=event_filter)
        return EventStream(collector)

    def datacenter_of(self, entity) -> Optional[vim.Datacenter]:
        """Walk up the inventory to the owning datacenter"""
        parent = entity
        while parent is not None and not isinstance(parent, vim.Datacenter):
            parent = parent.parent
        return parent

