"""
Provisioning and update workflow
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, List, Optional

from ..devices.descriptors import DiskDescriptor, devices_of
from ..devices.reconcile import DeviceReconciler
from ..devices.translate import read_devices
from ..models import Placement, VirtualMachineIdentity, VirtualMachineSpec
from .config_spec import ConfigSpecBuilder
from .customization import CustomizationWaiter, expand_customization_spec
from .migration import MigrationOrchestrator, disk_locators
from .rollback import RollbackController


logger = logging.getLogger(__name__)


class ProvisioningState(Enum):
    PENDING = 'pending'
    BARE_CREATE = 'bare_create'
    CLONE_CREATE = 'clone_create'
    CONFIGURED = 'configured'
    POWERED_ON = 'powered_on'
    READY = 'ready'


@dataclass
class ProvisioningResult:
    """Outcome of a successful create"""
    identity: VirtualMachineIdentity
    vm: Any = field(repr=False)
    states: List[ProvisioningState] = field(default_factory=list)
    ip_addresses: List[str] = field(default_factory=list)


@dataclass
class UpdateResult:
    """What an update changed"""
    changed: bool = False
    rebooted: bool = False
    moved: bool = False
    migrated: bool = False


class ProvisioningWorkflow:
    """Drives VM creation, post-create normalization and updates"""

    def __init__(self, client, vm_manager,
                 builder: Optional[ConfigSpecBuilder] = None,
                 migrator: Optional[MigrationOrchestrator] = None,
                 rollback: Optional[RollbackController] = None,
                 waiter_factory: Optional[Callable[[Any, float], Any]] = None,
                 customization_poll_interval: float = 1.0):
        self.client = client
        self.vm_manager = vm_manager
        self.builder = builder or ConfigSpecBuilder(DeviceReconciler(resolver=client.resolve))
        self.migrator = migrator or MigrationOrchestrator(vm_manager)
        self.rollback = rollback or RollbackController(vm_manager)
        self.waiter_factory = waiter_factory or (
            lambda vm, timeout: CustomizationWaiter(client, vm, timeout, customization_poll_interval))
        self.states: List[ProvisioningState] = []

    def _transition(self, state: ProvisioningState, name: str) -> None:
        logger.debug(f"VM {name}: {self.states[-1].value if self.states else 'start'} -> {state.value}")
        self.states.append(state)

    def _placement_handles(self, desired: VirtualMachineSpec):
        pool = self.client.resolve('ResourcePool', desired.resource_pool_id)
        host = self.client.resolve('HostSystem', desired.host_system_id) if desired.host_system_id else None
        self.vm_manager.validate_host(pool, host)
        datastore = self.client.resolve('Datastore', desired.datastore_id) if desired.datastore_id else None
        return pool, host, datastore

    # Create

    def create(self, desired: VirtualMachineSpec,
               record_identity: Optional[Callable[[Optional[VirtualMachineIdentity]], None]] = None
               ) -> ProvisioningResult:
        """
        Create a VM and bring it to the ready state

        Args:
            desired: Desired state of the new VM
            record_identity: Called with the durable identity as soon as the
                VM exists, and with None if a rollback removed it again

        Raises:
            ValidationError: Before any remote call if the declaration is invalid
            RollbackCompoundError: If post-clone cleanup failed as well
        """
        desired.validate()
        self.builder.validate(desired)
        self.states = []
        self._transition(ProvisioningState.PENDING, desired.name)

        pool, host, datastore = self._placement_handles(desired)
        datacenter = self.client.datacenter_of(pool)
        folder = self.vm_manager.folder_for(datacenter, desired.folder)

        waiter = None
        if desired.clone is None:
            vm = self._bare_create(desired, pool, host, datastore, folder, datacenter)
            if record_identity:
                record_identity(self.vm_manager.identity(vm))
        else:
            vm, waiter = self._clone_create(desired, pool, host, datastore, folder, datacenter,
                                            record_identity)
        identity = self.vm_manager.identity(vm)
        self._transition(ProvisioningState.CONFIGURED, desired.name)

        self.vm_manager.power_on(vm)
        self._transition(ProvisioningState.POWERED_ON, desired.name)

        if waiter is not None:
            # Customization failures leave the VM in place for inspection.
            waiter.wait()
            error = waiter.error()
            if error is not None:
                raise error
            logger.debug(f"VM {desired.name} customization finished")

        addresses = self.vm_manager.wait_for_guest_net(vm, desired.wait_for_guest_net_timeout)
        self._transition(ProvisioningState.READY, desired.name)
        return ProvisioningResult(identity=identity, vm=vm, states=list(self.states),
                                  ip_addresses=addresses)

    def _bare_create(self, desired, pool, host, datastore, folder, datacenter):
        self._transition(ProvisioningState.BARE_CREATE, desired.name)
        defaults, _ = self.vm_manager.environment(pool, host, desired.guest_id)
        config, _ = self.builder.build(desired, default_devices=read_devices(defaults))
        return self.vm_manager.create_vm(desired.name, config, defaults, folder, pool, host,
                                         datastore, datacenter)

    def _clone_create(self, desired, pool, host, datastore, folder, datacenter, record_identity=None):
        self._transition(ProvisioningState.CLONE_CREATE, desired.name)
        clone = desired.clone
        template = self.client.resolve('VirtualMachine', clone.template_uuid)

        customization_spec = None
        if clone.customize is not None:
            _, family = self.vm_manager.environment(pool, host, desired.guest_id)
            customization_spec = expand_customization_spec(clone.customize, family)

        template_disks = devices_of(read_devices(template.config.hardware.device), DiskDescriptor)
        vm = self.vm_manager.clone_vm(
            template, desired.name, folder, pool, host, datastore,
            disk_locators=disk_locators(template_disks, self._canonical_disks(desired.disks)),
            linked_clone=clone.linked_clone,
            timeout_minutes=clone.timeout,
        )
        if record_identity:
            record_identity(self.vm_manager.identity(vm))

        waiter = None
        try:
            observed = self.vm_manager.observe(vm)
            config, changed = self.builder.build(desired, observed)
            if changed:
                self.vm_manager.reconfigure(vm, config, observed.raw_devices, datacenter)
            if customization_spec is not None:
                if clone.customize.timeout > 0:
                    waiter = self.waiter_factory(vm, clone.customize.timeout * 60)
                self.vm_manager.customize(vm, customization_spec)
        except Exception as e:
            if waiter is not None:
                waiter.cancel()
            error = self.rollback.rollback(vm, e, declared_disks=desired.disks)
            if error is e:
                if record_identity:
                    record_identity(None)
                raise
            raise error from e
        return vm, waiter

    # Update

    def _moid(self, kind: str, object_id: Optional[str]) -> Optional[str]:
        if not object_id:
            return None
        return self.client.resolve(kind, object_id)._moId

    def _canonical_disks(self, disks):
        return [
            replace(d, datastore_id=self._moid('Datastore', d.datastore_id))
            if d.datastore_id and not d.attach else d
            for d in disks
        ]

    def update(self, identity, desired: VirtualMachineSpec,
               last_declared: Optional[VirtualMachineSpec] = None) -> UpdateResult:
        """
        Converge an existing VM onto desired

        Order: folder move, optional guest shutdown, reconfigure, power on
        with guest network wait, then migration. Only a VM shut down here
        for a reboot is powered back on.
        """
        desired.validate()
        self.builder.validate(desired)
        if desired.host_system_id:
            self.vm_manager.validate_host(
                self.client.resolve('ResourcePool', desired.resource_pool_id),
                self.client.resolve('HostSystem', desired.host_system_id),
            )
        result = UpdateResult()
        vm = self.vm_manager.find_vm(identity)
        observed = self.vm_manager.observe(vm)
        datacenter = self.client.datacenter_of(vm)

        if (desired.folder or None) != (observed.folder or None):
            self.vm_manager.move_to_folder(vm, self.vm_manager.folder_for(datacenter, desired.folder))
            result.moved = True

        config, changed = self.builder.build(desired, observed, last_declared)
        if changed:
            if config.reboot_required and observed.powered_on:
                self.vm_manager.graceful_power_off(
                    vm, desired.shutdown_wait_timeout, force=desired.force_power_off)
                result.rebooted = True
            self.vm_manager.reconfigure(vm, config, observed.raw_devices, datacenter)
            result.changed = True

        if result.rebooted:
            self.vm_manager.power_on(vm)
            self.vm_manager.wait_for_guest_net(vm, desired.wait_for_guest_net_timeout)

        if changed:
            observed = self.vm_manager.observe(vm)
        wanted = Placement(
            resource_pool_id=self._moid('ResourcePool', desired.resource_pool_id),
            host_system_id=self._moid('HostSystem', desired.host_system_id),
            datastore_id=self._moid('Datastore', desired.datastore_id),
        )
        relocate, needed = self.migrator.plan(
            observed.placement, wanted,
            devices_of(observed.devices, DiskDescriptor), self._canonical_disks(desired.disks))
        if needed:
            self.migrator.execute(vm, relocate, desired.migrate_wait_timeout)
            result.migrated = True
        return result
