"""
Migration orchestrator
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..devices.descriptors import DiskDescriptor
from ..devices.reconcile import DeviceReconciler
from ..models import Placement


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiskLocator:
    """Target datastore for one existing disk"""
    disk_key: int
    datastore_id: str


@dataclass
class RelocateSpec:
    """Placement changes submitted as a single relocation task"""
    resource_pool_id: Optional[str] = None
    host_system_id: Optional[str] = None
    datastore_id: Optional[str] = None
    disks: List[DiskLocator] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.resource_pool_id or self.host_system_id or self.datastore_id or self.disks)


def disk_locators(observed_disks: Sequence[DiskDescriptor],
                  desired_disks: Sequence[DiskDescriptor],
                  pin_all: bool = False) -> List[DiskLocator]:
    """
    Per-disk relocations for disks declared with an explicit datastore

    With pin_all, every matched disk with an explicit datastore gets a
    locator even when it already sits there, so it stays put while the
    rest of the VM moves. Datastore ids on both sides are compared as
    given, so callers pass MOIDs.
    """
    observed_disks = sorted(observed_disks, key=lambda d: d.address or (-1, -1))
    assigned = DeviceReconciler().match_disks(observed_disks, desired_disks)
    locators = []
    for desired, index in zip(desired_disks, assigned):
        if index is None or desired.attach or not desired.datastore_id:
            continue
        current = observed_disks[index]
        if pin_all or current.datastore_id != desired.datastore_id:
            locators.append(DiskLocator(disk_key=current.key, datastore_id=desired.datastore_id))
    return locators


class MigrationOrchestrator:
    """Detects placement drift and relocates the VM"""

    def __init__(self, vm_manager):
        self.vm_manager = vm_manager

    def plan(self, current: Placement, desired: Placement,
             observed_disks: Sequence[DiskDescriptor] = (),
             desired_disks: Sequence[DiskDescriptor] = ()) -> Tuple[RelocateSpec, bool]:
        """
        Compute the relocation needed to reach the desired placement

        Returns:
            (spec, needed) where needed is False when nothing drifted
        """
        spec = RelocateSpec()
        if desired.resource_pool_id and desired.resource_pool_id != current.resource_pool_id:
            spec.resource_pool_id = desired.resource_pool_id
        if desired.host_system_id and desired.host_system_id != current.host_system_id:
            spec.host_system_id = desired.host_system_id
        if desired.datastore_id and desired.datastore_id != current.datastore_id:
            spec.datastore_id = desired.datastore_id

        spec.disks = disk_locators(observed_disks, desired_disks,
                                   pin_all=spec.datastore_id is not None)
        needed = not spec.empty
        if needed:
            logger.debug(f"Migration needed: {spec}")
        return spec, needed

    def execute(self, vm, spec: RelocateSpec, timeout_minutes: Optional[float] = None) -> None:
        """
        Submit the relocation and wait for it

        Raises:
            TimeoutError: If the wait expires; the task keeps running remotely
        """
        timeout = timeout_minutes * 60 if timeout_minutes and timeout_minutes > 0 else None
        self.vm_manager.relocate(vm, spec, timeout=timeout)
