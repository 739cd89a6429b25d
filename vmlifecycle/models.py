"""
Desired-state and observed-state records
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from .devices.descriptors import (
    DEFAULT_SCSI_SHARING,
    DEFAULT_SCSI_TYPE,
    BusState,
    DesiredDeviceSet,
    DeviceDescriptor,
    DiskDescriptor,
    NetworkInterfaceDescriptor,
    OpticalDriveDescriptor,
)
from .exceptions import ValidationError


# Attributes compared between desired and observed state
ATTRIBUTE_NAMES = (
    'name',
    'num_cpus',
    'num_cores_per_socket',
    'memory_mb',
    'guest_id',
    'annotation',
    'firmware',
    'cpu_hot_add_enabled',
    'memory_hot_add_enabled',
    'boot_delay',
    'efi_secure_boot_enabled',
)


def _from_mapping(cls, data: Optional[Dict[str, Any]], context: str):
    """Build a dataclass from a mapping, rejecting unknown keys"""
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValidationError(f"{context}: expected a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls) if f.init}
    unknown = set(data) - known
    if unknown:
        raise ValidationError(f"{context}: unknown option(s) {', '.join(sorted(unknown))}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ValidationError(f"{context}: {e}") from e


@dataclass(frozen=True)
class VirtualMachineIdentity:
    """Durable instance UUID plus the last seen managed object id"""
    instance_uuid: str
    moid: Optional[str] = None

    def __str__(self) -> str:
        return self.instance_uuid


@dataclass
class LinuxOptions:
    host_name: str
    domain: str
    time_zone: Optional[str] = None
    hw_clock_utc: bool = True


@dataclass
class WindowsOptions:
    computer_name: str
    admin_password: Optional[str] = None
    workgroup: Optional[str] = None
    join_domain: Optional[str] = None
    domain_admin_user: Optional[str] = None
    domain_admin_password: Optional[str] = None
    full_name: str = 'Administrator'
    organization_name: str = 'Managed by vmlifecycle'
    product_key: Optional[str] = None
    time_zone: int = 85
    auto_logon: bool = False
    auto_logon_count: int = 1
    run_once_command_list: List[str] = field(default_factory=list)


@dataclass
class CustomizationInterface:
    """Per-NIC guest network settings; no address means DHCP"""
    ipv4_address: Optional[str] = None
    ipv4_netmask: Optional[int] = None
    ipv6_address: Optional[str] = None
    ipv6_netmask: Optional[int] = None
    dns_server_list: List[str] = field(default_factory=list)
    dns_domain: Optional[str] = None


@dataclass
class CustomizationSettings:
    """Guest OS personalization applied once after a clone"""
    timeout: int = 10
    linux_options: Optional[LinuxOptions] = None
    windows_options: Optional[WindowsOptions] = None
    windows_sysprep_text: Optional[str] = None
    network_interfaces: List[CustomizationInterface] = field(default_factory=list)
    dns_server_list: List[str] = field(default_factory=list)
    dns_suffix_list: List[str] = field(default_factory=list)
    ipv4_gateway: Optional[str] = None
    ipv6_gateway: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CustomizationSettings':
        data = dict(data)
        data['linux_options'] = _from_mapping(LinuxOptions, data.get('linux_options'), 'linux_options')
        data['windows_options'] = _from_mapping(WindowsOptions, data.get('windows_options'), 'windows_options')
        data['network_interfaces'] = [
            _from_mapping(CustomizationInterface, nic, f'network_interface.{i}')
            for i, nic in enumerate(data.get('network_interfaces') or [])
        ]
        return _from_mapping(cls, data, 'customize')

    @property
    def family_option(self) -> str:
        """Which guest identity block is set: linux, windows or sysprep"""
        chosen = [name for name, value in (
            ('linux', self.linux_options),
            ('windows', self.windows_options),
            ('sysprep', self.windows_sysprep_text),
        ) if value]
        if len(chosen) != 1:
            raise ValidationError(
                "customize: exactly one of linux_options, windows_options or "
                "windows_sysprep_text must be set")
        return chosen[0]


@dataclass
class CloneSettings:
    """Source template and clone behavior"""
    template_uuid: str
    linked_clone: bool = False
    timeout: int = 30
    customize: Optional[CustomizationSettings] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CloneSettings':
        data = dict(data)
        if data.get('customize') is not None:
            data['customize'] = CustomizationSettings.from_dict(data['customize'])
        return _from_mapping(cls, data, 'clone')


@dataclass(frozen=True)
class Placement:
    """Compute and storage placement of a VM"""
    resource_pool_id: Optional[str] = None
    host_system_id: Optional[str] = None
    datastore_id: Optional[str] = None


@dataclass
class VirtualMachineSpec:
    """Desired state of one virtual machine"""
    name: str
    resource_pool_id: str
    datastore_id: Optional[str] = None
    host_system_id: Optional[str] = None
    folder: Optional[str] = None
    guest_id: str = 'otherGuest64'
    num_cpus: int = 1
    num_cores_per_socket: int = 1
    memory_mb: int = 1024
    cpu_hot_add_enabled: bool = False
    memory_hot_add_enabled: bool = False
    firmware: str = 'bios'
    efi_secure_boot_enabled: bool = False
    boot_delay: int = 0
    annotation: str = ''
    scsi_type: str = DEFAULT_SCSI_TYPE
    scsi_controller_count: int = 1
    scsi_bus_sharing: str = DEFAULT_SCSI_SHARING
    disks: List[DiskDescriptor] = field(default_factory=list)
    network_interfaces: List[NetworkInterfaceDescriptor] = field(default_factory=list)
    cdroms: List[OpticalDriveDescriptor] = field(default_factory=list)
    clone: Optional[CloneSettings] = None
    wait_for_guest_net_timeout: int = 5
    shutdown_wait_timeout: int = 3
    migrate_wait_timeout: int = 30
    force_power_off: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VirtualMachineSpec':
        """Build a spec from a plain mapping such as parsed YAML"""
        data = dict(data)
        data['disks'] = [
            _from_mapping(DiskDescriptor, d, f'disk.{i}') for i, d in enumerate(data.get('disks') or [])
        ]
        data['network_interfaces'] = [
            _from_mapping(NetworkInterfaceDescriptor, n, f'network_interface.{i}')
            for i, n in enumerate(data.get('network_interfaces') or [])
        ]
        data['cdroms'] = [
            _from_mapping(OpticalDriveDescriptor, c, f'cdrom.{i}') for i, c in enumerate(data.get('cdroms') or [])
        ]
        if data.get('clone') is not None:
            data['clone'] = CloneSettings.from_dict(data['clone'])
        spec = _from_mapping(cls, data, 'virtual machine')
        spec.validate()
        return spec

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("name: required option not set")
        if not self.resource_pool_id:
            raise ValidationError("resource_pool_id: required option not set")
        if self.num_cpus < 1 or self.memory_mb < 1:
            raise ValidationError("num_cpus and memory_mb must be positive")
        if self.num_cores_per_socket < 1 or self.num_cpus % self.num_cores_per_socket:
            raise ValidationError(
                f"num_cores_per_socket ({self.num_cores_per_socket}) must evenly divide "
                f"num_cpus ({self.num_cpus})")
        if self.firmware not in ('bios', 'efi'):
            raise ValidationError(f"firmware: invalid value {self.firmware!r}")
        if self.efi_secure_boot_enabled and self.firmware != 'efi':
            raise ValidationError("efi_secure_boot_enabled requires firmware 'efi'")
        if self.clone is not None and self.clone.customize is not None:
            # Raises when the guest identity blocks are ambiguous.
            self.clone.customize.family_option

    @property
    def placement(self) -> Placement:
        return Placement(
            resource_pool_id=self.resource_pool_id,
            host_system_id=self.host_system_id,
            datastore_id=self.datastore_id,
        )

    def device_set(self) -> DesiredDeviceSet:
        return DesiredDeviceSet(
            disks=tuple(self.disks),
            network_interfaces=tuple(self.network_interfaces),
            optical_drives=tuple(self.cdroms),
            scsi_type=self.scsi_type,
            scsi_controller_count=self.scsi_controller_count,
            scsi_bus_sharing=self.scsi_bus_sharing,
        )

    def attributes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in ATTRIBUTE_NAMES}


@dataclass
class ObservedState:
    """A VM as read back from vSphere"""
    identity: VirtualMachineIdentity
    name: str
    power_state: str
    folder: Optional[str] = None
    guest_id: Optional[str] = None
    num_cpus: int = 0
    num_cores_per_socket: int = 1
    memory_mb: int = 0
    cpu_hot_add_enabled: bool = False
    memory_hot_add_enabled: bool = False
    firmware: Optional[str] = None
    boot_delay: int = 0
    efi_secure_boot_enabled: bool = False
    annotation: str = ''
    placement: Placement = field(default_factory=Placement)
    devices: List[DeviceDescriptor] = field(default_factory=list)
    bus_state: BusState = field(default_factory=BusState)
    tools_running: bool = False
    guest_ip_addresses: List[str] = field(default_factory=list)
    default_ip_address: Optional[str] = None
    raw_devices: List[Any] = field(default_factory=list, repr=False, compare=False)

    @property
    def powered_on(self) -> bool:
        return self.power_state == 'poweredOn'

    def attributes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in ATTRIBUTE_NAMES}


def load_desired_state(path: str) -> VirtualMachineSpec:
    """Load a VirtualMachineSpec from a YAML document"""
    with open(path, 'r') as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValidationError(f"{path}: expected a mapping at the top level")
    return VirtualMachineSpec.from_dict(data)
