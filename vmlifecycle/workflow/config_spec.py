"""
Config spec builder
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..devices.descriptors import BusState, DeviceChange, DeviceDescriptor, change_list_string
from ..devices.reconcile import DeviceReconciler
from ..models import ObservedState, VirtualMachineSpec


logger = logging.getLogger(__name__)

# Never need a power cycle
LIVE_ATTRIBUTES = ('name', 'annotation', 'boot_delay')
# Need a power cycle unless the matching hot-add flag is on and the value grows
HOT_ADD_ATTRIBUTES = {
    'num_cpus': 'cpu_hot_add_enabled',
    'memory_mb': 'memory_hot_add_enabled',
}


@dataclass
class ConfigSpec:
    """Attribute deltas plus device changes applied by one reconfigure"""
    attributes: Dict[str, Any] = field(default_factory=dict)
    device_changes: List[DeviceChange] = field(default_factory=list)
    bus_state: BusState = field(default_factory=BusState)
    reboot_required: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.attributes or self.device_changes)


class ConfigSpecBuilder:
    """Computes the ConfigSpec that converges observed state to desired state"""

    def __init__(self, reconciler: Optional[DeviceReconciler] = None):
        self.reconciler = reconciler or DeviceReconciler()

    def build(self, desired: VirtualMachineSpec,
              observed: Optional[ObservedState] = None,
              last_declared: Optional[VirtualMachineSpec] = None,
              default_devices: Sequence[DeviceDescriptor] = ()) -> Tuple[ConfigSpec, bool]:
        """
        Build a ConfigSpec

        With no observed state the spec describes a new VM: every attribute
        is set and devices are diffed against the platform defaults.

        Returns:
            (spec, changed) where changed is False for an empty spec
        """
        if observed is None:
            attributes = desired.attributes()
            existing = list(default_devices)
            bus_state = None
            reboot_required = False
        else:
            attributes, reboot_required = self.attribute_deltas(desired, observed)
            existing = observed.devices
            bus_state = observed.bus_state

        result = self.reconciler.reconcile(
            existing,
            desired.device_set(),
            bus_state=bus_state,
            last_declared=last_declared.device_set() if last_declared else None,
        )

        spec = ConfigSpec(
            attributes=attributes,
            device_changes=result.changes,
            bus_state=result.bus_state,
            reboot_required=reboot_required or (observed is not None and result.reboot_required),
        )
        if spec.changed:
            logger.debug(f"Config spec for {desired.name}: attributes={sorted(attributes)} "
                         f"devices=[{change_list_string(spec.device_changes)}] "
                         f"reboot_required={spec.reboot_required}")
        else:
            logger.debug(f"No configuration changes for {desired.name}")
        return spec, spec.changed

    def validate(self, desired: VirtualMachineSpec) -> None:
        """Reject an invalid device declaration before anything remote happens"""
        self.reconciler.validate(desired.device_set())

    def attribute_deltas(self, desired: VirtualMachineSpec,
                         observed: ObservedState) -> Tuple[Dict[str, Any], bool]:
        """Top-level attribute differences and whether they need a power cycle"""
        wanted = desired.attributes()
        current = observed.attributes()
        deltas = {name: value for name, value in wanted.items() if current.get(name) != value}

        reboot_required = False
        for name, value in deltas.items():
            if name in LIVE_ATTRIBUTES:
                continue
            if name in HOT_ADD_ATTRIBUTES:
                hot_add = current.get(HOT_ADD_ATTRIBUTES[name])
                if hot_add and value > (current.get(name) or 0):
                    continue
            logger.debug(f"Change to {name} requires a VM restart")
            reboot_required = True
        return deltas, reboot_required
