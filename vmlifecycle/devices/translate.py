"""
Translation between pyVmomi device objects and device descriptors
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from pyVmomi import vim

from .descriptors import (
    ChangeOperation,
    DeviceChange,
    DeviceDescriptor,
    DiskDescriptor,
    FileOperation,
    NetworkInterfaceDescriptor,
    OpticalDriveDescriptor,
    SCSIControllerDescriptor,
    describe_device,
)
from ..exceptions import ValidationError
from ..infrastructure.vsphere.datastore import datastore_path, split_datastore_path
from ..infrastructure.vsphere.network_config import (
    adapter_type_of,
    ethernet_backing,
    network_id_of,
    new_ethernet_card,
)


logger = logging.getLogger(__name__)

KB_PER_GB = 1024 * 1024
IDE_DEVICES_PER_CONTROLLER = 2

SCSI_CONTROLLER_CLASSES = (
    ('pvscsi', vim.vm.device.ParaVirtualSCSIController),
    ('lsilogic-sas', vim.vm.device.VirtualLsiLogicSASController),
    ('lsilogic', vim.vm.device.VirtualLsiLogicController),
    ('buslogic', vim.vm.device.VirtualBusLogicController),
)

# Our attribute names mapped onto vim.vm.ConfigSpec fields
CONFIG_SPEC_FIELDS = {
    'name': 'name',
    'num_cpus': 'numCPUs',
    'num_cores_per_socket': 'numCoresPerSocket',
    'memory_mb': 'memoryMB',
    'guest_id': 'guestId',
    'annotation': 'annotation',
    'firmware': 'firmware',
    'cpu_hot_add_enabled': 'cpuHotAddEnabled',
    'memory_hot_add_enabled': 'memoryHotAddEnabled',
}
BOOT_OPTION_FIELDS = {
    'boot_delay': 'bootDelay',
    'efi_secure_boot_enabled': 'efiSecureBootEnabled',
}


def controller_type_of(controller) -> str:
    for name, cls in SCSI_CONTROLLER_CLASSES:
        if isinstance(controller, cls):
            return name
    return type(controller).__name__


def read_devices(raw_devices: Sequence[Any]) -> List[DeviceDescriptor]:
    """Convert a VM's hardware device list into descriptors"""
    bus_of = {
        d.key: d.busNumber
        for d in raw_devices
        if isinstance(d, vim.vm.device.VirtualSCSIController)
    }
    devices: List[DeviceDescriptor] = []
    for device in raw_devices:
        if isinstance(device, vim.vm.device.VirtualSCSIController):
            devices.append(SCSIControllerDescriptor(
                bus_number=device.busNumber,
                controller_type=controller_type_of(device),
                sharing=str(device.sharedBus),
                key=device.key,
            ))
        elif isinstance(device, vim.vm.device.VirtualDisk):
            if device.controllerKey not in bus_of:
                logger.debug(f"Skipping disk {device.key} on a non-SCSI controller")
                continue
            backing = device.backing
            _, path = split_datastore_path(getattr(backing, 'fileName', None))
            datastore = getattr(backing, 'datastore', None)
            devices.append(DiskDescriptor(
                size_gb=int(device.capacityInKB // KB_PER_GB),
                unit_number=device.unitNumber,
                bus_number=bus_of[device.controllerKey],
                label=device.deviceInfo.label if device.deviceInfo else None,
                datastore_id=datastore._moId if datastore else None,
                path=path or None,
                thin_provisioned=bool(getattr(backing, 'thinProvisioned', False)),
                eagerly_scrub=bool(getattr(backing, 'eagerlyScrub', False)),
                key=device.key,
            ))
        elif isinstance(device, vim.vm.device.VirtualEthernetCard):
            devices.append(NetworkInterfaceDescriptor(
                network_id=network_id_of(device.backing),
                adapter_type=adapter_type_of(device) or type(device).__name__,
                mac_address=device.macAddress,
                use_static_mac=device.addressType == 'manual',
                key=device.key,
            ))
        elif isinstance(device, vim.vm.device.VirtualCdrom):
            backing = device.backing
            if isinstance(backing, vim.vm.device.VirtualCdrom.IsoBackingInfo):
                _, path = split_datastore_path(backing.fileName)
                devices.append(OpticalDriveDescriptor(
                    datastore_id=backing.datastore._moId if backing.datastore else None,
                    path=path,
                    key=device.key,
                ))
            else:
                devices.append(OpticalDriveDescriptor(client_device=True, key=device.key))
    return devices


class DeviceSpecTranslator:
    """Turns device changes into vim.vm.device.VirtualDeviceSpec entries"""

    def __init__(self, raw_devices: Sequence[Any], resolver: Callable[[str, str], Any],
                 directory_creator=None, datacenter=None):
        self.raw = {d.key: d for d in raw_devices}
        self.resolver = resolver
        self.directory_creator = directory_creator
        self.datacenter = datacenter
        self.bus_keys = {
            d.busNumber: d.key
            for d in raw_devices
            if isinstance(d, vim.vm.device.VirtualSCSIController)
        }
        self._next_key = -100
        self._edits: Dict[int, vim.vm.device.VirtualDeviceSpec] = {}
        self._specs: List[vim.vm.device.VirtualDeviceSpec] = []

    def translate(self, changes: Sequence[DeviceChange]) -> List[vim.vm.device.VirtualDeviceSpec]:
        self._specs = []
        self._edits = {}
        for change in changes:
            device = change.device
            if isinstance(device, SCSIControllerDescriptor):
                self._controller(change)
            elif isinstance(device, DiskDescriptor):
                self._disk(change)
            elif isinstance(device, NetworkInterfaceDescriptor):
                self._network_interface(change)
            elif isinstance(device, OpticalDriveDescriptor):
                self._optical_drive(change)
            else:
                raise TypeError(f"Unhandled device descriptor: {type(device).__name__}")
        return self._specs

    def _temp_key(self) -> int:
        key = self._next_key
        self._next_key -= 1
        return key

    def _raw_device(self, change: DeviceChange):
        key = (change.previous or change.device).key
        if key not in self.raw:
            raise ValidationError(f"{describe_device(change.device)}: device key {key} not found on VM")
        return self.raw[key]

    def _add_spec(self, operation, device, file_operation=None):
        spec = vim.vm.device.VirtualDeviceSpec()
        spec.operation = operation
        spec.device = device
        if file_operation is not None:
            spec.fileOperation = file_operation
        self._specs.append(spec)
        return spec

    def _edit(self, device):
        # One edit entry per device; later edits mutate the same object.
        if device.key not in self._edits:
            self._edits[device.key] = self._add_spec(
                vim.vm.device.VirtualDeviceSpec.Operation.edit, device)
        return device

    # SCSI controllers

    def _new_controller(self, descriptor: SCSIControllerDescriptor):
        for name, cls in SCSI_CONTROLLER_CLASSES:
            if name == descriptor.controller_type:
                controller = cls()
                break
        else:
            raise ValidationError(f"Invalid SCSI controller type: {descriptor.controller_type}")
        controller.key = self._temp_key()
        controller.busNumber = descriptor.bus_number
        controller.sharedBus = descriptor.sharing
        return controller

    def _controller(self, change: DeviceChange):
        descriptor = change.device
        if change.operation == ChangeOperation.ADD:
            controller = self._new_controller(descriptor)
            self.bus_keys[descriptor.bus_number] = controller.key
            self._add_spec(vim.vm.device.VirtualDeviceSpec.Operation.add, controller)
            return

        current = self._raw_device(change)
        if controller_type_of(current) == descriptor.controller_type:
            current.sharedBus = descriptor.sharing
            self._edit(current)
            return

        # A controller's class cannot be edited: add the replacement, move the
        # attached devices over, then drop the old controller.
        controller = self._new_controller(descriptor)
        self.bus_keys[descriptor.bus_number] = controller.key
        self._add_spec(vim.vm.device.VirtualDeviceSpec.Operation.add, controller)
        for device in self.raw.values():
            if getattr(device, 'controllerKey', None) == current.key:
                device.controllerKey = controller.key
                self._edit(device)
        self._add_spec(vim.vm.device.VirtualDeviceSpec.Operation.remove, current)

    # Disks

    def _disk(self, change: DeviceChange):
        descriptor = change.device
        Operation = vim.vm.device.VirtualDeviceSpec.Operation
        FileOp = vim.vm.device.VirtualDeviceSpec.FileOperation

        if change.operation == ChangeOperation.REMOVE:
            destroy = change.file_operation == FileOperation.DESTROY
            self._add_spec(Operation.remove, self._raw_device(change),
                           FileOp.destroy if destroy else None)
            return

        if change.operation == ChangeOperation.EDIT:
            disk = self._raw_device(change)
            disk.capacityInKB = descriptor.size_gb * KB_PER_GB
            disk.capacityInBytes = descriptor.size_gb * KB_PER_GB * 1024
            disk.controllerKey = self.bus_keys[descriptor.bus_number]
            disk.unitNumber = descriptor.unit_number
            self._edit(disk)
            return

        disk = vim.vm.device.VirtualDisk()
        disk.key = self._temp_key()
        disk.controllerKey = self.bus_keys[descriptor.bus_number]
        disk.unitNumber = descriptor.unit_number
        backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo()
        backing.diskMode = 'persistent'
        backing.thinProvisioned = descriptor.thin_provisioned
        backing.eagerlyScrub = descriptor.eagerly_scrub
        backing.fileName = ''
        if descriptor.datastore_id:
            datastore = self.resolver('Datastore', descriptor.datastore_id)
            backing.datastore = datastore
            backing.fileName = datastore_path(datastore, descriptor.path or '')
            if descriptor.path and not descriptor.attach and self.directory_creator:
                self.directory_creator.ensure_parent(datastore, descriptor.path, self.datacenter)
        disk.backing = backing
        if not descriptor.attach:
            disk.capacityInKB = descriptor.size_gb * KB_PER_GB
            disk.capacityInBytes = descriptor.size_gb * KB_PER_GB * 1024
        self._add_spec(Operation.add, disk,
                       None if change.file_operation is None else FileOp.create)

    # Network interfaces

    def _network_interface(self, change: DeviceChange):
        descriptor = change.device
        Operation = vim.vm.device.VirtualDeviceSpec.Operation

        if change.operation == ChangeOperation.REMOVE:
            self._add_spec(Operation.remove, self._raw_device(change))
            return

        if change.operation == ChangeOperation.EDIT:
            card = self._raw_device(change)
            if change.previous is None or change.previous.network_id != descriptor.network_id:
                card.backing = ethernet_backing(self.resolver('Network', descriptor.network_id))
        else:
            card = new_ethernet_card(descriptor.adapter_type)
            card.key = self._temp_key()
            card.backing = ethernet_backing(self.resolver('Network', descriptor.network_id))

        if descriptor.use_static_mac:
            card.addressType = 'manual'
            card.macAddress = descriptor.mac_address
        else:
            card.addressType = 'generated'

        if change.operation == ChangeOperation.EDIT:
            self._edit(card)
        else:
            self._add_spec(Operation.add, card)

    # Optical drives

    def _cdrom_backing(self, descriptor: OpticalDriveDescriptor):
        if descriptor.client_device:
            backing = vim.vm.device.VirtualCdrom.RemotePassthroughBackingInfo()
            backing.deviceName = ''
            backing.exclusive = False
            return backing
        datastore = self.resolver('Datastore', descriptor.datastore_id)
        backing = vim.vm.device.VirtualCdrom.IsoBackingInfo()
        backing.datastore = datastore
        backing.fileName = datastore_path(datastore, descriptor.path)
        return backing

    def _free_ide_controller(self):
        used = {}
        for device in self.raw.values():
            key = getattr(device, 'controllerKey', None)
            if key is not None:
                used[key] = used.get(key, 0) + 1
        for spec in self._specs:
            if spec.operation == vim.vm.device.VirtualDeviceSpec.Operation.add:
                key = getattr(spec.device, 'controllerKey', None)
                if key is not None:
                    used[key] = used.get(key, 0) + 1
        for device in self.raw.values():
            if isinstance(device, vim.vm.device.VirtualIDEController):
                if used.get(device.key, 0) < IDE_DEVICES_PER_CONTROLLER:
                    return device
        raise ValidationError("no free IDE controller available for optical drive")

    def _optical_drive(self, change: DeviceChange):
        descriptor = change.device
        Operation = vim.vm.device.VirtualDeviceSpec.Operation

        if change.operation == ChangeOperation.REMOVE:
            self._add_spec(Operation.remove, self._raw_device(change))
            return

        if change.operation == ChangeOperation.EDIT:
            cdrom = self._raw_device(change)
            cdrom.backing = self._cdrom_backing(descriptor)
            self._edit(cdrom)
            return

        cdrom = vim.vm.device.VirtualCdrom()
        cdrom.key = self._temp_key()
        cdrom.controllerKey = self._free_ide_controller().key
        cdrom.backing = self._cdrom_backing(descriptor)
        cdrom.connectable = vim.vm.device.VirtualDevice.ConnectInfo()
        cdrom.connectable.startConnected = True
        cdrom.connectable.allowGuestControl = True
        self._add_spec(Operation.add, cdrom)


def apply_attributes(spec: vim.vm.ConfigSpec, attributes: Dict[str, Any]) -> vim.vm.ConfigSpec:
    """Copy attribute deltas onto a vim.vm.ConfigSpec"""
    boot_options = None
    for name, value in attributes.items():
        if name in CONFIG_SPEC_FIELDS:
            setattr(spec, CONFIG_SPEC_FIELDS[name], value)
        elif name in BOOT_OPTION_FIELDS:
            if boot_options is None:
                boot_options = vim.vm.BootOptions()
            setattr(boot_options, BOOT_OPTION_FIELDS[name], value)
        else:
            raise ValueError(f"Unknown configuration attribute: {name}")
    if boot_options is not None:
        spec.bootOptions = boot_options
    return spec
