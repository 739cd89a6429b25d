"""
VM lifecycle management for vSphere
"""

import ipaddress
import logging
import time
from typing import Any, List, Optional, Sequence, Tuple
from pyVmomi import vim, vmodl
from .client import VSphereClient
from .datastore import DatastoreDirectoryCreator, datastore_path, split_datastore_path
from ...devices.descriptors import BusState, DiskDescriptor, devices_of
from ...devices.reconcile import DeviceReconciler
from ...devices.translate import DeviceSpecTranslator, apply_attributes, read_devices
from ...exceptions import NotFoundError, TimeoutError, ValidationError, VMNotFoundError
from ...models import ObservedState, Placement, VirtualMachineIdentity


logger = logging.getLogger(__name__)

DEFAULT_ROUTES = ('0.0.0.0', '::')


class VMManager:
    """Manages VM lifecycle operations"""

    def __init__(self, vsphere_client: VSphereClient,
                 directory_creator: Optional[DatastoreDirectoryCreator] = None,
                 guest_net_poll_interval: float = 5.0,
                 shutdown_poll_interval: float = 1.0):
        self.client = vsphere_client
        self.directory_creator = directory_creator
        self.guest_net_poll_interval = guest_net_poll_interval
        self.shutdown_poll_interval = shutdown_poll_interval

    # Lookup and read

    def find_vm(self, identity) -> vim.VirtualMachine:
        """Resolve a VM by durable identity (or instance UUID)"""
        uuid = getattr(identity, 'instance_uuid', identity)
        return self.client.resolve('VirtualMachine', uuid)

    def identity(self, vm: vim.VirtualMachine) -> VirtualMachineIdentity:
        return VirtualMachineIdentity(instance_uuid=vm.config.instanceUuid, moid=vm._moId)

    def observe(self, vm: vim.VirtualMachine) -> ObservedState:
        """Read the current state of a VM"""
        try:
            config = vm.config
            if config is None:
                raise VMNotFoundError(f"VM {vm} has no configuration")
            raw_devices = list(config.hardware.device)
            devices = read_devices(raw_devices)
            boot = config.bootOptions
            ips, default_ip = self._guest_addresses(vm)

            return ObservedState(
                identity=self.identity(vm),
                name=config.name,
                power_state=str(vm.runtime.powerState),
                folder=self._folder_path(vm),
                guest_id=config.guestId,
                num_cpus=config.hardware.numCPU,
                num_cores_per_socket=config.hardware.numCoresPerSocket or 1,
                memory_mb=config.hardware.memoryMB,
                cpu_hot_add_enabled=bool(config.cpuHotAddEnabled),
                memory_hot_add_enabled=bool(config.memoryHotAddEnabled),
                firmware=config.firmware,
                boot_delay=boot.bootDelay if boot else 0,
                efi_secure_boot_enabled=bool(boot.efiSecureBootEnabled) if boot else False,
                annotation=config.annotation or '',
                placement=Placement(
                    resource_pool_id=vm.resourcePool._moId if vm.resourcePool else None,
                    host_system_id=vm.runtime.host._moId if vm.runtime.host else None,
                    datastore_id=self._vmx_datastore(vm),
                ),
                devices=devices,
                bus_state=BusState.from_devices(devices),
                tools_running=vm.guest.toolsRunningStatus == 'guestToolsRunning' if vm.guest else False,
                guest_ip_addresses=ips,
                default_ip_address=default_ip,
                raw_devices=raw_devices,
            )
        except vmodl.fault.ManagedObjectNotFound as e:
            raise VMNotFoundError(f"VM {vm} no longer exists") from e

    def _folder_path(self, vm) -> Optional[str]:
        """Folder path relative to the datacenter VM folder"""
        parts = []
        parent = vm.parent
        while isinstance(parent, vim.Folder) and not isinstance(parent.parent, vim.Datacenter):
            parts.insert(0, parent.name)
            parent = parent.parent
        return '/'.join(parts) or None

    def _vmx_datastore(self, vm) -> Optional[str]:
        name, _ = split_datastore_path(vm.config.files.vmPathName if vm.config.files else None)
        for datastore in vm.datastore or []:
            if datastore.name == name:
                return datastore._moId
        return None

    # Guest networking

    def _default_gateways(self, vm) -> List[str]:
        gateways = []
        for stack in vm.guest.ipStack or []:
            routes = stack.ipRouteConfig.ipRoute if stack.ipRouteConfig else []
            for route in routes:
                if route.prefixLength == 0 and route.network in DEFAULT_ROUTES and route.gateway:
                    if route.gateway.ipAddress:
                        gateways.append(route.gateway.ipAddress)
        return gateways

    def _routable_addresses(self, vm) -> List[str]:
        """Guest addresses on a network that contains a default gateway"""
        gateways = [ipaddress.ip_address(gw) for gw in self._default_gateways(vm)]
        routable = []
        for nic in vm.guest.net or []:
            addresses = nic.ipConfig.ipAddress if nic.ipConfig else []
            for address in addresses:
                try:
                    network = ipaddress.ip_network(
                        f"{address.ipAddress}/{address.prefixLength}", strict=False)
                except ValueError:
                    continue
                if any(gw in network for gw in gateways):
                    routable.append(address.ipAddress)
        return routable

    def _guest_addresses(self, vm) -> Tuple[List[str], Optional[str]]:
        if vm.guest is None:
            return [], None
        ips = []
        for nic in vm.guest.net or []:
            ips.extend(a.ipAddress for a in (nic.ipConfig.ipAddress if nic.ipConfig else []))
        routable = self._routable_addresses(vm)
        for address in routable:
            if ipaddress.ip_address(address).version == 4:
                return ips, address
        if routable:
            return ips, routable[0]
        return ips, ips[0] if ips else vm.guest.ipAddress

    def wait_for_guest_net(self, vm: vim.VirtualMachine, timeout_minutes: Optional[float]) -> List[str]:
        """
        Wait until the guest reports a routable IP address

        A timeout of zero or less skips the wait without polling the guest.

        Returns:
            The routable addresses found (empty when the wait was skipped)

        Raises:
            TimeoutError: If no routable address shows up in time
        """
        if timeout_minutes is None or timeout_minutes <= 0:
            logger.debug(f"Skipping guest network wait for VM {vm.name}")
            return []

        deadline = time.monotonic() + timeout_minutes * 60
        while True:
            routable = self._routable_addresses(vm)
            if routable:
                logger.debug(f"VM {vm.name} has routable addresses {routable}")
                return routable
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Timeout waiting for an available IP address on VM {vm.name}",
                    details={'timeout_minutes': timeout_minutes},
                )
            time.sleep(self.guest_net_poll_interval)

    # Placement

    def environment(self, pool, host, guest_id: str) -> Tuple[List[Any], Optional[str]]:
        """Default devices and guest OS family for a guest ID in a placement"""
        compute = pool.owner
        query = vim.EnvironmentBrowser.ConfigOptionQuerySpec(guestId=[guest_id])
        if host is not None:
            query.host = host
        option = compute.environmentBrowser.QueryConfigOptionEx(spec=query)
        family = None
        for descriptor in option.guestOSDescriptor or []:
            if descriptor.id == guest_id:
                family = descriptor.family
                break
        return list(option.defaultDevice or []), family

    def validate_host(self, pool, host) -> None:
        """Check that host belongs to the compute resource owning pool"""
        if host is None:
            return
        hosts = list(pool.owner.host or [])
        if host not in hosts:
            raise ValidationError(
                f"host {host.name} is not a member of the compute resource for "
                f"resource pool {pool.name}")

    def folder_for(self, datacenter: vim.Datacenter, path: Optional[str]) -> vim.Folder:
        """Get VM folder by path relative to the datacenter"""
        current_folder = datacenter.vmFolder
        for folder_name in (path or '').split('/'):
            if folder_name:
                found = False
                for child in current_folder.childEntity:
                    if isinstance(child, vim.Folder) and child.name == folder_name:
                        current_folder = child
                        found = True
                        break
                if not found:
                    raise NotFoundError(f"Folder '{folder_name}' not found in path '{path}'")
        return current_folder

    # Remote tasks

    def _translator(self, raw_devices, datacenter=None) -> DeviceSpecTranslator:
        return DeviceSpecTranslator(raw_devices, self.client.resolve,
                                    directory_creator=self.directory_creator,
                                    datacenter=datacenter)

    def create_vm(self, name: str, config, default_devices, folder, pool, host,
                  datastore, datacenter=None) -> vim.VirtualMachine:
        """Create a new VM from a config spec seeded with the default devices"""
        if datastore is None:
            raise ValidationError(f"datastore_id is required to create VM {name}")
        spec = apply_attributes(vim.vm.ConfigSpec(), config.attributes)
        spec.name = name
        spec.files = vim.vm.FileInfo(vmPathName=datastore_path(datastore))
        spec.deviceChange = self._translator(default_devices, datacenter).translate(config.device_changes)

        logger.info(f"Creating VM {name}")
        task = folder.CreateVM_Task(config=spec, pool=pool, host=host)
        return self.client.wait_for_task(task)

    def clone_vm(self, template, name: str, folder, pool, host=None, datastore=None,
                 disk_locators=(), linked_clone: bool = False,
                 timeout_minutes: Optional[float] = None) -> vim.VirtualMachine:
        """Clone a VM from a template"""
        relocate_spec = vim.vm.RelocateSpec()
        relocate_spec.pool = pool
        if host is not None:
            relocate_spec.host = host
        if datastore is not None:
            relocate_spec.datastore = datastore
        relocate_spec.disk = [
            vim.vm.RelocateSpec.DiskLocator(
                diskId=locator.disk_key,
                datastore=self.client.resolve('Datastore', locator.datastore_id),
            )
            for locator in disk_locators
        ]

        clone_spec = vim.vm.CloneSpec()
        clone_spec.location = relocate_spec
        clone_spec.powerOn = False
        clone_spec.template = False

        if linked_clone:
            snapshot = template.snapshot.currentSnapshot if template.snapshot else None
            if snapshot is None:
                raise ValidationError(
                    f"template {template.name} has no current snapshot for a linked clone")
            clone_spec.snapshot = snapshot
            relocate_spec.diskMoveType = 'createNewChildDiskBacking'

        logger.info(f"Cloning VM {name} from {template.name}")
        task = template.Clone(folder=folder, name=name, spec=clone_spec)
        timeout = timeout_minutes * 60 if timeout_minutes else None
        return self.client.wait_for_task(task, timeout=timeout)

    def reconfigure(self, vm: vim.VirtualMachine, config, raw_devices, datacenter=None) -> bool:
        """Apply a ConfigSpec; an empty spec never reaches vSphere"""
        if not config.changed:
            logger.debug(f"Skipping reconfigure of VM {vm.name}: nothing to change")
            return False
        spec = apply_attributes(vim.vm.ConfigSpec(), config.attributes)
        spec.deviceChange = self._translator(raw_devices, datacenter).translate(config.device_changes)

        logger.info(f"Reconfiguring VM {vm.name}")
        task = vm.ReconfigVM_Task(spec=spec)
        self.client.wait_for_task(task)
        return True

    def power_on(self, vm: vim.VirtualMachine) -> bool:
        """Power on VM"""
        if vm.runtime.powerState == vim.VirtualMachinePowerState.poweredOn:
            return True

        logger.info(f"Powering on VM {vm.name}")
        task = vm.PowerOnVM_Task()
        self.client.wait_for_task(task)
        return True

    def power_off(self, vm: vim.VirtualMachine) -> bool:
        """Hard power off VM"""
        if vm.runtime.powerState == vim.VirtualMachinePowerState.poweredOff:
            return True

        logger.info(f"Powering off VM {vm.name}")
        task = vm.PowerOffVM_Task()
        self.client.wait_for_task(task)
        return True

    def graceful_power_off(self, vm: vim.VirtualMachine, timeout_minutes: float,
                           force: bool = True) -> bool:
        """
        Shut the guest down, falling back to a hard power off

        Raises:
            TimeoutError: If the guest does not stop in time and force is off
        """
        if vm.runtime.powerState == vim.VirtualMachinePowerState.poweredOff:
            return True

        if vm.guest.toolsRunningStatus != 'guestToolsRunning':
            if force:
                return self.power_off(vm)
            raise ValidationError(
                f"VM {vm.name} needs a restart but VMware Tools is not running "
                f"and force_power_off is disabled")

        try:
            logger.info(f"Shutting down guest OS of VM {vm.name}")
            vm.ShutdownGuest()
        except vim.fault.ToolsUnavailable:
            if not force:
                raise
            return self.power_off(vm)

        deadline = time.monotonic() + timeout_minutes * 60
        while vm.runtime.powerState != vim.VirtualMachinePowerState.poweredOff:
            if time.monotonic() >= deadline:
                if not force:
                    raise TimeoutError(f"Timeout waiting for VM {vm.name} to shut down")
                logger.warning(f"VM {vm.name} did not shut down in time, forcing power off")
                return self.power_off(vm)
            time.sleep(self.shutdown_poll_interval)
        return True

    def customize(self, vm: vim.VirtualMachine, spec) -> None:
        logger.info(f"Customizing guest OS of VM {vm.name}")
        task = vm.CustomizeVM_Task(spec=spec)
        self.client.wait_for_task(task)

    def relocate(self, vm: vim.VirtualMachine, relocate, timeout: Optional[float] = None) -> None:
        """Submit one relocation task; a timeout leaves it running remotely"""
        spec = vim.vm.RelocateSpec()
        if relocate.resource_pool_id:
            spec.pool = self.client.resolve('ResourcePool', relocate.resource_pool_id)
        if relocate.host_system_id:
            spec.host = self.client.resolve('HostSystem', relocate.host_system_id)
        if relocate.datastore_id:
            spec.datastore = self.client.resolve('Datastore', relocate.datastore_id)
        spec.disk = [
            vim.vm.RelocateSpec.DiskLocator(
                diskId=locator.disk_key,
                datastore=self.client.resolve('Datastore', locator.datastore_id),
            )
            for locator in relocate.disks
        ]

        logger.info(f"Migrating VM {vm.name}")
        task = vm.RelocateVM_Task(spec=spec)
        self.client.wait_for_task(task, timeout=timeout)

    def move_to_folder(self, vm: vim.VirtualMachine, folder: vim.Folder) -> None:
        logger.info(f"Moving VM {vm.name} to folder {folder.name}")
        task = folder.MoveIntoFolder_Task([vm])
        self.client.wait_for_task(task)

    def delete_vm(self, vm: vim.VirtualMachine, declared_disks: Sequence[DiskDescriptor] = ()) -> bool:
        """
        Delete VM

        declared_disks is the full disk declaration of the VM. It is paired
        with the live disks the same way reconciliation pairs them, and
        disks declared keep_on_remove or attach are detached first so their
        backing files survive.
        """
        # Power off first if needed
        if vm.runtime.powerState != vim.VirtualMachinePowerState.poweredOff:
            self.power_off(vm)

        if any(d.preserved for d in declared_disks):
            raw_devices = list(vm.config.hardware.device)
            observed = sorted(devices_of(read_devices(raw_devices), DiskDescriptor),
                              key=lambda d: d.address or (-1, -1))
            assigned = DeviceReconciler().match_disks(observed, declared_disks)
            detach = [
                observed[j] for d, j in zip(declared_disks, assigned)
                if j is not None and d.preserved
            ]
            if detach:
                spec = vim.vm.ConfigSpec()
                spec.deviceChange = []
                by_key = {d.key: d for d in raw_devices}
                for disk in detach:
                    change = vim.vm.device.VirtualDeviceSpec()
                    change.operation = vim.vm.device.VirtualDeviceSpec.Operation.remove
                    change.device = by_key[disk.key]
                    spec.deviceChange.append(change)
                logger.info(f"Detaching {len(detach)} preserved disk(s) from VM {vm.name}")
                self.client.wait_for_task(vm.ReconfigVM_Task(spec=spec))

        logger.info(f"Destroying VM {vm.name}")
        task = vm.Destroy_Task()
        self.client.wait_for_task(task)
        return True
