"""
Main VM lifecycle client
"""

import logging
import threading
from typing import Callable, Optional

from .config import LifecycleSettings
from .devices.reconcile import DeviceReconciler
from .exceptions import VMNotFoundError
from .infrastructure.vsphere.client import VSphereClient
from .infrastructure.vsphere.datastore import DatastoreDirectoryCreator
from .infrastructure.vsphere.vm_manager import VMManager
from .models import ObservedState, VirtualMachineIdentity, VirtualMachineSpec
from .workflow.config_spec import ConfigSpecBuilder
from .workflow.provisioning import ProvisioningWorkflow, UpdateResult


logger = logging.getLogger(__name__)


class VMLifecycleClient:
    """Create, read, update and delete virtual machines from desired state"""

    def __init__(self, vsphere_client: VSphereClient,
                 settings: Optional[LifecycleSettings] = None,
                 directory_lock: Optional[threading.Lock] = None):
        self.vsphere = vsphere_client
        self.settings = settings
        self.vm_manager = VMManager(
            vsphere_client,
            directory_creator=DatastoreDirectoryCreator(vsphere_client, lock=directory_lock),
            guest_net_poll_interval=settings.guest_net_poll_interval if settings else 5.0,
        )
        self.workflow = ProvisioningWorkflow(
            vsphere_client,
            self.vm_manager,
            builder=ConfigSpecBuilder(DeviceReconciler(resolver=vsphere_client.resolve)),
            customization_poll_interval=settings.event_poll_interval if settings else 1.0,
        )

    @classmethod
    def from_settings(cls, settings: LifecycleSettings,
                      directory_lock: Optional[threading.Lock] = None) -> 'VMLifecycleClient':
        """Connect to vCenter and build a client"""
        vsphere = VSphereClient(
            host=settings.host,
            username=settings.username,
            password=settings.password,
            port=settings.port,
            disable_ssl_verification=settings.disable_ssl_verification,
            task_timeout=settings.task_timeout,
            task_poll_interval=settings.task_poll_interval,
        )
        vsphere.connect()
        return cls(vsphere, settings=settings, directory_lock=directory_lock)

    def create(self, spec: VirtualMachineSpec,
               record_identity: Optional[Callable[[Optional[VirtualMachineIdentity]], None]] = None
               ) -> VirtualMachineIdentity:
        """Create a VM; record_identity sees the identity before any later step"""
        result = self.workflow.create(spec, record_identity=record_identity)
        logger.debug(f"VM {spec.name} ready with identity {result.identity}")
        return result.identity

    def read(self, identity: VirtualMachineIdentity) -> ObservedState:
        """
        Read the current state of a VM

        Raises:
            VMNotFoundError: If the identity no longer resolves
        """
        vm = self.vm_manager.find_vm(identity)
        return self.vm_manager.observe(vm)

    def exists(self, identity: VirtualMachineIdentity) -> bool:
        try:
            self.vm_manager.find_vm(identity)
        except VMNotFoundError:
            return False
        return True

    def update(self, identity: VirtualMachineIdentity, spec: VirtualMachineSpec,
               previous: Optional[VirtualMachineSpec] = None) -> UpdateResult:
        return self.workflow.update(identity, spec, last_declared=previous)

    def delete(self, identity: VirtualMachineIdentity, spec: Optional[VirtualMachineSpec] = None) -> None:
        """Delete a VM, detaching disks the spec marks as preserved"""
        vm = self.vm_manager.find_vm(identity)
        self.vm_manager.delete_vm(vm, declared_disks=list(spec.disks) if spec else [])
