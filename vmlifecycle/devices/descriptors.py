"""
Declarative device descriptors

The device classes handled by the lifecycle engine form a closed union:
disks, network interfaces, optical drives and SCSI controllers. Observed
devices and desired devices share the same shape so they can be diffed
directly.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, List, Optional, Sequence, Tuple, Union


SCSI_CONTROLLER_TYPES = ('pvscsi', 'lsilogic', 'lsilogic-sas', 'buslogic')
SCSI_BUS_SHARING_MODES = ('noSharing', 'virtualSharing', 'physicalSharing')
NETWORK_ADAPTER_TYPES = ('vmxnet3', 'e1000', 'e1000e')

DEFAULT_SCSI_TYPE = 'pvscsi'
DEFAULT_SCSI_SHARING = 'noSharing'
MIXED_SCSI_TYPE = 'mixed'

# Unit 7 on every SCSI controller belongs to the controller itself.
SCSI_CONTROLLER_UNIT = 7
SCSI_UNITS_PER_CONTROLLER = 16
MAX_SCSI_CONTROLLERS = 4


@dataclass(frozen=True)
class SCSIControllerDescriptor:
    """SCSI controller addressed by bus number"""
    bus_number: int
    controller_type: str = DEFAULT_SCSI_TYPE
    sharing: str = DEFAULT_SCSI_SHARING
    key: Optional[int] = None

    kind: ClassVar[str] = 'scsi_controller'


@dataclass(frozen=True)
class DiskDescriptor:
    """Virtual disk addressed by SCSI bus and unit number"""
    size_gb: int = 0
    unit_number: Optional[int] = None
    bus_number: int = 0
    label: Optional[str] = None
    datastore_id: Optional[str] = None
    path: Optional[str] = None
    attach: bool = False
    thin_provisioned: bool = True
    eagerly_scrub: bool = False
    keep_on_remove: bool = False
    key: Optional[int] = None

    kind: ClassVar[str] = 'disk'

    @property
    def address(self) -> Optional[Tuple[int, int]]:
        if self.unit_number is None:
            return None
        return (self.bus_number, self.unit_number)

    @property
    def preserved(self) -> bool:
        """Whether the backing file survives removal of the device"""
        return self.keep_on_remove or self.attach


@dataclass(frozen=True)
class NetworkInterfaceDescriptor:
    """Network interface identified by MAC address or device key"""
    network_id: str
    adapter_type: str = 'vmxnet3'
    mac_address: Optional[str] = None
    use_static_mac: bool = False
    key: Optional[int] = None

    kind: ClassVar[str] = 'network_interface'


@dataclass(frozen=True)
class OpticalDriveDescriptor:
    """CD/DVD drive backed by an ISO file or the client device"""
    datastore_id: Optional[str] = None
    path: Optional[str] = None
    client_device: bool = False
    key: Optional[int] = None

    kind: ClassVar[str] = 'optical_drive'


DeviceDescriptor = Union[
    SCSIControllerDescriptor,
    DiskDescriptor,
    NetworkInterfaceDescriptor,
    OpticalDriveDescriptor,
]

DEVICE_CLASSES = (
    SCSIControllerDescriptor,
    DiskDescriptor,
    NetworkInterfaceDescriptor,
    OpticalDriveDescriptor,
)


def devices_of(devices: Sequence[DeviceDescriptor], device_class) -> List:
    """Filter a device list down to one device class, keeping order"""
    if device_class not in DEVICE_CLASSES:
        raise TypeError(f"Unknown device class: {device_class!r}")
    return [d for d in devices if isinstance(d, device_class)]


@dataclass(frozen=True)
class BusState:
    """Observed or desired SCSI bus configuration"""
    controller_type: str = DEFAULT_SCSI_TYPE
    controller_count: int = 1
    sharing: str = DEFAULT_SCSI_SHARING

    @classmethod
    def from_devices(cls, devices: Sequence[DeviceDescriptor]) -> 'BusState':
        """Read the bus state off an observed device list"""
        controllers = devices_of(devices, SCSIControllerDescriptor)
        if not controllers:
            return cls(controller_type=DEFAULT_SCSI_TYPE, controller_count=0)

        types = {c.controller_type for c in controllers}
        sharing = {c.sharing for c in controllers}
        return cls(
            controller_type=types.pop() if len(types) == 1 else MIXED_SCSI_TYPE,
            controller_count=max(c.bus_number for c in controllers) + 1,
            sharing=sharing.pop() if len(sharing) == 1 else DEFAULT_SCSI_SHARING,
        )


@dataclass(frozen=True)
class DesiredDeviceSet:
    """The declared devices of one virtual machine"""
    disks: Tuple[DiskDescriptor, ...] = ()
    network_interfaces: Tuple[NetworkInterfaceDescriptor, ...] = ()
    optical_drives: Tuple[OpticalDriveDescriptor, ...] = ()
    scsi_type: str = DEFAULT_SCSI_TYPE
    scsi_controller_count: int = 1
    scsi_bus_sharing: str = DEFAULT_SCSI_SHARING


class ChangeOperation(Enum):
    ADD = 'add'
    EDIT = 'edit'
    REMOVE = 'remove'


class FileOperation(Enum):
    CREATE = 'create'
    DESTROY = 'destroy'


@dataclass(frozen=True)
class DeviceChange:
    """One incremental device change"""
    operation: ChangeOperation
    device: DeviceDescriptor
    previous: Optional[DeviceDescriptor] = None
    file_operation: Optional[FileOperation] = None

    def __str__(self) -> str:
        return f"{self.operation.value} {describe_device(self.device)}"


@dataclass
class ReconcileResult:
    """Output of a reconcile pass"""
    changes: List[DeviceChange] = field(default_factory=list)
    bus_state: BusState = field(default_factory=BusState)
    reboot_required: bool = False

    @property
    def empty(self) -> bool:
        return not self.changes

    def of(self, device_class) -> List[DeviceChange]:
        return [c for c in self.changes if isinstance(c.device, device_class)]


def describe_device(device: DeviceDescriptor) -> str:
    """Short human readable form used in logs and errors"""
    if isinstance(device, SCSIControllerDescriptor):
        return f"scsi controller {device.bus_number} ({device.controller_type})"
    if isinstance(device, DiskDescriptor):
        where = (f"{device.bus_number}:{device.unit_number}"
                 if device.unit_number is not None else "unassigned")
        return f"disk@{where} size={device.size_gb}GB"
    if isinstance(device, NetworkInterfaceDescriptor):
        ident = device.mac_address or device.key or 'new'
        return f"network interface {ident} on {device.network_id}"
    if isinstance(device, OpticalDriveDescriptor):
        backing = 'client device' if device.client_device else device.path
        return f"optical drive ({backing})"
    raise TypeError(f"Unhandled device descriptor: {type(device).__name__}")


def device_list_string(devices: Sequence[DeviceDescriptor]) -> str:
    return ", ".join(describe_device(d) for d in devices) or "<none>"


def change_list_string(changes: Sequence[DeviceChange]) -> str:
    return ", ".join(str(c) for c in changes) or "<none>"
