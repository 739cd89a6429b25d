"""
Device reconciliation engine

Given the devices observed on a virtual machine and the declared device
set, computes the incremental add/edit/remove changes that converge the
former onto the latter. The SCSI bus is normalized first since disks
address their controller by bus number.
"""

import logging
from dataclasses import replace
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple

from .descriptors import (
    MAX_SCSI_CONTROLLERS,
    NETWORK_ADAPTER_TYPES,
    SCSI_BUS_SHARING_MODES,
    SCSI_CONTROLLER_TYPES,
    SCSI_CONTROLLER_UNIT,
    SCSI_UNITS_PER_CONTROLLER,
    BusState,
    ChangeOperation,
    DesiredDeviceSet,
    DeviceChange,
    DeviceDescriptor,
    DiskDescriptor,
    FileOperation,
    NetworkInterfaceDescriptor,
    OpticalDriveDescriptor,
    ReconcileResult,
    SCSIControllerDescriptor,
    change_list_string,
    describe_device,
    devices_of,
)
from ..exceptions import NotFoundError, ValidationError
from ..infrastructure.vsphere.network_config import network_id_for


logger = logging.getLogger(__name__)

# resolver(kind, object_id) returns a handle or raises NotFoundError
Resolver = Callable[[str, str], Any]


class DeviceReconciler:
    """Computes device change lists between observed and declared devices"""

    def __init__(self, resolver: Optional[Resolver] = None):
        self.resolver = resolver

    def reconcile(self, existing: Sequence[DeviceDescriptor],
                  desired: DesiredDeviceSet,
                  bus_state: Optional[BusState] = None,
                  last_declared: Optional[DesiredDeviceSet] = None) -> ReconcileResult:
        """
        Compute the changes needed to converge existing devices to desired

        Args:
            existing: Devices as observed on the remote object
            desired: Newly declared device set
            bus_state: Observed SCSI bus state; read off existing when omitted
            last_declared: Device set declared on the previous apply, if any

        Returns:
            ReconcileResult with the change list, the resulting bus state and
            the advisory reboot flag

        Raises:
            ValidationError: If the declaration is inconsistent or references
                a backing object that cannot be resolved
        """
        existing = list(existing)
        if bus_state is None:
            bus_state = BusState.from_devices(existing)

        new_bus, changes = self.normalize_bus(existing, desired, bus_state)
        reboot_required = bool(changes)
        if reboot_required:
            logger.debug("SCSI bus has changed and requires a VM restart")

        changes.extend(self._reconcile_disks(existing, desired, new_bus, last_declared))
        changes.extend(self._reconcile_network_interfaces(existing, desired, last_declared))
        changes.extend(self._reconcile_optical_drives(existing, desired))

        logger.debug(f"Device changes: {change_list_string(changes)}")
        return ReconcileResult(changes=changes, bus_state=new_bus,
                               reboot_required=reboot_required)

    def validate(self, desired: DesiredDeviceSet) -> None:
        """
        Check a declared device set without looking at any observed devices

        Covers everything reconcile rejects that does not depend on the
        current hardware. Disk bus numbers are only bounded by the SCSI
        controller maximum since the final controller count is not known yet.

        Raises:
            ValidationError: If the declaration is inconsistent or references
                a backing object that cannot be resolved
        """
        self._validate_bus(desired)
        self._check_controller_count(desired.scsi_controller_count)
        self._validate_disks(desired.disks, MAX_SCSI_CONTROLLERS)
        self._validate_network_interfaces(desired.network_interfaces)
        self._validate_optical_drives(desired.optical_drives)

        for d in desired.disks:
            if d.datastore_id:
                self._check_backing('Datastore', d.datastore_id, d)
        for d in desired.network_interfaces:
            self._check_backing('Network', d.network_id, d)
        for d in desired.optical_drives:
            if d.datastore_id:
                self._check_backing('Datastore', d.datastore_id, d)

    def normalize_bus(self, existing: Sequence[DeviceDescriptor],
                      desired: DesiredDeviceSet,
                      bus_state: BusState) -> Tuple[BusState, List[DeviceChange]]:
        """Add missing controllers and align controller type and sharing"""
        self._validate_bus(desired)

        # Controllers are only ever added, never removed.
        count = max(bus_state.controller_count, desired.scsi_controller_count)
        self._check_controller_count(count)

        controllers = {c.bus_number: c for c in devices_of(existing, SCSIControllerDescriptor)}
        changes = []
        for bus in range(count):
            current = controllers.get(bus)
            wanted = SCSIControllerDescriptor(
                bus_number=bus,
                controller_type=desired.scsi_type,
                sharing=desired.scsi_bus_sharing,
                key=current.key if current else None,
            )
            if current is None:
                if bus < bus_state.controller_count:
                    logger.debug(f"SCSI bus {bus} reported without a controller device, skipping")
                    continue
                changes.append(DeviceChange(ChangeOperation.ADD, wanted))
            elif (current.controller_type, current.sharing) != (wanted.controller_type, wanted.sharing):
                changes.append(DeviceChange(ChangeOperation.EDIT, wanted, previous=current))

        return BusState(desired.scsi_type, count, desired.scsi_bus_sharing), changes

    @staticmethod
    def _validate_bus(desired: DesiredDeviceSet) -> None:
        if desired.scsi_type not in SCSI_CONTROLLER_TYPES:
            raise ValidationError(f"Invalid SCSI controller type: {desired.scsi_type}")
        if desired.scsi_bus_sharing not in SCSI_BUS_SHARING_MODES:
            raise ValidationError(f"Invalid SCSI bus sharing mode: {desired.scsi_bus_sharing}")
        if desired.scsi_controller_count < 1:
            raise ValidationError("scsi_controller_count must be at least 1")

    @staticmethod
    def _check_controller_count(count: int) -> None:
        if count > MAX_SCSI_CONTROLLERS:
            raise ValidationError(
                f"scsi_controller_count too high ({count}) - maximum is {MAX_SCSI_CONTROLLERS}")

    # Disks

    def match_disks(self, observed: Sequence[DiskDescriptor],
                    declared: Sequence[DiskDescriptor]) -> List[Optional[int]]:
        """
        Pair each declared disk with an observed disk

        Matching goes by device key, then by bus/unit address, then, for
        disks declared without an address, by declaration order against the
        remaining observed disks in address order.

        Returns:
            For each declared disk, the index of its observed disk or None
        """
        assigned: List[Optional[int]] = [None] * len(declared)
        taken: Set[int] = set()

        def claim(i: int, predicate) -> None:
            for j, disk in enumerate(observed):
                if j not in taken and predicate(disk):
                    assigned[i] = j
                    taken.add(j)
                    return

        for i, d in enumerate(declared):
            if d.key is not None:
                claim(i, lambda o, d=d: o.key == d.key)
        for i, d in enumerate(declared):
            if assigned[i] is None and d.address is not None:
                claim(i, lambda o, d=d: o.address == d.address)

        claimed = {d.address for d in declared if d.address is not None}
        for i, d in enumerate(declared):
            if assigned[i] is None and d.address is None:
                claim(i, lambda o: o.address not in claimed)
        return assigned

    def _reconcile_disks(self, existing, desired, bus, last_declared) -> List[DeviceChange]:
        observed = sorted(devices_of(existing, DiskDescriptor),
                          key=lambda d: d.address or (-1, -1))
        declared = list(desired.disks)
        self._validate_disks(declared, bus.controller_count)

        assigned = self.match_disks(observed, declared)
        matched = {j for j in assigned if j is not None}

        removes, adds, edits = [], [], []
        for j, disk in enumerate(observed):
            if j in matched:
                continue
            keep = self._declared_preservation(disk, last_declared)
            removes.append(DeviceChange(
                ChangeOperation.REMOVE, disk,
                file_operation=None if keep else FileOperation.DESTROY,
            ))

        occupied = {observed[j].address for j in matched}
        for i, d in enumerate(declared):
            j = assigned[i]
            if j is None:
                continue
            current = observed[j]
            target = d.address or current.address
            if not d.attach and d.size_gb < current.size_gb:
                raise ValidationError(
                    f"virtual disk {self._disk_name(d, i)}: virtual disks cannot be shrunk "
                    f"(old: {current.size_gb} new: {d.size_gb})")
            if target != current.address:
                if target in occupied:
                    raise ValidationError(
                        f"unit number {target[1]} on SCSI bus {target[0]} is in use")
                occupied.discard(current.address)
                occupied.add(target)
            updated = replace(
                current,
                size_gb=current.size_gb if d.attach else d.size_gb,
                bus_number=target[0],
                unit_number=target[1],
                label=d.label or current.label,
                keep_on_remove=d.keep_on_remove,
                attach=d.attach,
            )
            if (updated.size_gb, updated.address) != (current.size_gb, current.address):
                edits.append(DeviceChange(ChangeOperation.EDIT, updated, previous=current))

        # Explicit addresses are placed before automatic ones so an automatic
        # assignment never steals a declared unit.
        placed = {}
        for i, d in enumerate(declared):
            if assigned[i] is None and d.address is not None:
                if d.address in occupied:
                    raise ValidationError(
                        f"unit number {d.unit_number} on SCSI bus {d.bus_number} is in use")
                occupied.add(d.address)
                placed[i] = d.address
        for i, d in enumerate(declared):
            if assigned[i] is None and d.address is None:
                placed[i] = self._next_free_unit(occupied, bus.controller_count, d.bus_number)
                occupied.add(placed[i])

        for i, d in enumerate(declared):
            if i not in placed:
                continue
            if d.datastore_id:
                self._check_backing('Datastore', d.datastore_id, d)
            new_disk = replace(d, bus_number=placed[i][0], unit_number=placed[i][1], key=None)
            adds.append(DeviceChange(
                ChangeOperation.ADD, new_disk,
                file_operation=None if d.attach else FileOperation.CREATE,
            ))

        return removes + adds + edits

    def _validate_disks(self, declared: Sequence[DiskDescriptor], controller_count: int) -> None:
        seen = set()
        for i, d in enumerate(declared):
            name = self._disk_name(d, i)
            if not 0 <= d.bus_number < controller_count:
                raise ValidationError(
                    f"bus_number on disk {name} too high ({d.bus_number}) - "
                    f"{controller_count} SCSI controller(s) available")
            if d.unit_number is not None:
                if not 0 <= d.unit_number < SCSI_UNITS_PER_CONTROLLER:
                    raise ValidationError(
                        f"unit_number on disk {name} too high ({d.unit_number}) - "
                        f"maximum value is {SCSI_UNITS_PER_CONTROLLER - 1}")
                if d.unit_number == SCSI_CONTROLLER_UNIT:
                    raise ValidationError(
                        f"unit_number {SCSI_CONTROLLER_UNIT} on disk {name} is reserved "
                        f"for the SCSI controller")
                if d.address in seen:
                    raise ValidationError(f"disk: duplicate SCSI unit_number {d.unit_number} "
                                          f"on bus {d.bus_number}")
                seen.add(d.address)
            if d.attach:
                if not (d.datastore_id and d.path):
                    raise ValidationError(
                        f"datastore_id and path for disk {name} are required when attach is set")
            elif d.size_gb < 1:
                raise ValidationError(f"size for disk {name}: required option not set")
            if d.thin_provisioned and d.eagerly_scrub:
                raise ValidationError(
                    f"{name}: eagerly_scrub and thin_provisioned cannot both be set to true")

    def _next_free_unit(self, occupied: Set[Tuple[int, int]], controller_count: int,
                        start_bus: int = 0) -> Tuple[int, int]:
        # Search the declared bus first, then wrap around the others
        for bus in [*range(start_bus, controller_count), *range(start_bus)]:
            for unit in range(SCSI_UNITS_PER_CONTROLLER):
                if unit == SCSI_CONTROLLER_UNIT:
                    continue
                if (bus, unit) not in occupied:
                    return (bus, unit)
        raise ValidationError(
            f"no free unit number left on {controller_count} SCSI controller(s)")

    @staticmethod
    def _declared_preservation(disk: DiskDescriptor, last_declared: Optional[DesiredDeviceSet]) -> bool:
        if last_declared is not None:
            for prev in last_declared.disks:
                if prev.key is not None and prev.key == disk.key:
                    return prev.preserved
                if prev.address is not None and prev.address == disk.address:
                    return prev.preserved
        return disk.preserved

    @staticmethod
    def _disk_name(disk: DiskDescriptor, index: int) -> str:
        return repr(disk.label) if disk.label else f"disk.{index}"

    # Network interfaces

    def _reconcile_network_interfaces(self, existing, desired, last_declared) -> List[DeviceChange]:
        observed = devices_of(existing, NetworkInterfaceDescriptor)
        declared = list(desired.network_interfaces)
        self._validate_network_interfaces(declared)

        previous = list(last_declared.network_interfaces) if last_declared else []
        assigned: List[Optional[int]] = [None] * len(declared)
        taken: Set[int] = set()

        def claim(i: int, predicate) -> None:
            for j, nic in enumerate(observed):
                if j not in taken and predicate(nic):
                    assigned[i] = j
                    taken.add(j)
                    return

        for i, d in enumerate(declared):
            if d.key is not None:
                claim(i, lambda o, d=d: o.key == d.key)
        for i, d in enumerate(declared):
            if assigned[i] is None and d.mac_address:
                claim(i, lambda o, d=d: (o.mac_address or '').lower() == d.mac_address.lower())
        for i, d in enumerate(declared):
            if assigned[i] is None and i < len(previous) and previous[i].key is not None:
                claim(i, lambda o, k=previous[i].key: o.key == k)
        for i, d in enumerate(declared):
            if assigned[i] is None and d.key is None and not d.use_static_mac:
                claim(i, lambda o: True)

        removes, adds, edits = [], [], []
        for j, nic in enumerate(observed):
            if j not in taken:
                removes.append(DeviceChange(ChangeOperation.REMOVE, nic))

        for i, d in enumerate(declared):
            j = assigned[i]
            if j is None:
                self._check_backing('Network', d.network_id, d)
                adds.append(DeviceChange(ChangeOperation.ADD, replace(d, key=None)))
                continue
            current = observed[j]
            if current.adapter_type != d.adapter_type:
                # The adapter class of an existing card cannot be edited.
                self._check_backing('Network', d.network_id, d)
                removes.append(DeviceChange(ChangeOperation.REMOVE, current))
                adds.append(DeviceChange(ChangeOperation.ADD, replace(d, key=None)))
                continue
            # Declared ids may be names or paths; observed ones are canonical.
            network_changed = self._backing_id('Network', d.network_id, d) != current.network_id
            updated = replace(
                current,
                network_id=d.network_id if network_changed else current.network_id,
                use_static_mac=d.use_static_mac,
                mac_address=d.mac_address if d.use_static_mac else current.mac_address,
            )
            if updated != current:
                edits.append(DeviceChange(ChangeOperation.EDIT, updated, previous=current))

        return removes + adds + edits

    @staticmethod
    def _validate_network_interfaces(declared: Sequence[NetworkInterfaceDescriptor]) -> None:
        for i, nic in enumerate(declared):
            if nic.adapter_type not in NETWORK_ADAPTER_TYPES:
                raise ValidationError(f"network_interface.{i}: invalid adapter type {nic.adapter_type}")
            if nic.use_static_mac and not nic.mac_address:
                raise ValidationError(f"network_interface.{i}: mac_address required with use_static_mac")

    # Optical drives

    def _reconcile_optical_drives(self, existing, desired) -> List[DeviceChange]:
        observed = devices_of(existing, OpticalDriveDescriptor)
        declared = list(desired.optical_drives)
        self._validate_optical_drives(declared)

        assigned: List[Optional[int]] = [None] * len(declared)
        taken: Set[int] = set()
        for i, d in enumerate(declared):
            if d.key is None:
                continue
            for j, o in enumerate(observed):
                if j not in taken and o.key == d.key:
                    assigned[i] = j
                    taken.add(j)
                    break
        free = [j for j in range(len(observed)) if j not in taken]
        for i in range(len(declared)):
            if assigned[i] is None and free:
                assigned[i] = free.pop(0)
                taken.add(assigned[i])

        removes, adds, edits = [], [], []
        for j, drive in enumerate(observed):
            if j not in taken:
                removes.append(DeviceChange(ChangeOperation.REMOVE, drive))
        for i, d in enumerate(declared):
            j = assigned[i]
            datastore_id = self._backing_id('Datastore', d.datastore_id, d) if d.datastore_id else None
            if j is None:
                adds.append(DeviceChange(ChangeOperation.ADD, replace(d, key=None)))
                continue
            current = observed[j]
            if datastore_id is None or datastore_id != current.datastore_id:
                datastore_id = d.datastore_id
            updated = replace(current, datastore_id=datastore_id, path=d.path,
                              client_device=d.client_device)
            if updated != current:
                edits.append(DeviceChange(ChangeOperation.EDIT, updated, previous=current))
        return removes + adds + edits

    @staticmethod
    def _validate_optical_drives(declared: Sequence[OpticalDriveDescriptor]) -> None:
        for i, d in enumerate(declared):
            if d.client_device and (d.datastore_id or d.path):
                raise ValidationError(f"cdrom.{i}: client_device conflicts with datastore_id and path")
            if not d.client_device and not (d.datastore_id and d.path):
                raise ValidationError(f"cdrom.{i}: either client_device or datastore_id and path must be set")

    def _check_backing(self, kind: str, object_id: str, device: DeviceDescriptor) -> Any:
        if self.resolver is None:
            return None
        try:
            return self.resolver(kind, object_id)
        except NotFoundError as e:
            raise ValidationError(
                f"{describe_device(device)}: {kind.lower()} {object_id!r} cannot be resolved"
            ) from e

    def _backing_id(self, kind: str, object_id: str, device: DeviceDescriptor) -> str:
        """object_id in the form devices report it, resolving names and paths"""
        handle = self._check_backing(kind, object_id, device)
        if handle is None:
            return object_id
        if kind == 'Network':
            return network_id_for(handle)
        return handle._moId
