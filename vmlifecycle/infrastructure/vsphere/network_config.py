"""
Network adapter construction for vSphere VMs
"""

from typing import Optional

from pyVmomi import vim

from ...exceptions import ValidationError


# Checked in order; VirtualE1000e is not a subclass of VirtualE1000 but keep
# the more specific class first regardless.
ADAPTER_CLASSES = (
    ('vmxnet3', vim.vm.device.VirtualVmxnet3),
    ('e1000e', vim.vm.device.VirtualE1000e),
    ('e1000', vim.vm.device.VirtualE1000),
)


def adapter_type_of(card: vim.vm.device.VirtualEthernetCard) -> Optional[str]:
    """Map an ethernet card object to its adapter type name"""
    for name, cls in ADAPTER_CLASSES:
        if isinstance(card, cls):
            return name
    return None


def new_ethernet_card(adapter_type: str) -> vim.vm.device.VirtualEthernetCard:
    """Create an unattached ethernet card of the given adapter type"""
    for name, cls in ADAPTER_CLASSES:
        if name == adapter_type:
            adapter = cls()
            break
    else:
        raise ValidationError(f"Unknown adapter type: {adapter_type}")

    adapter.connectable = vim.vm.device.VirtualDevice.ConnectInfo()
    adapter.connectable.startConnected = True
    adapter.connectable.allowGuestControl = True
    adapter.connectable.connected = True
    return adapter


def ethernet_backing(network) -> vim.vm.device.VirtualDevice.BackingInfo:
    """Build the backing that connects a card to a network or DVS portgroup"""
    if isinstance(network, vim.dvs.DistributedVirtualPortgroup):
        # Distributed vSwitch
        backing = vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo()
        backing.port = vim.dvs.PortConnection()
        backing.port.portgroupKey = network.key
        backing.port.switchUuid = network.config.distributedVirtualSwitch.uuid
    else:
        # Standard vSwitch
        backing = vim.vm.device.VirtualEthernetCard.NetworkBackingInfo()
        backing.network = network
        backing.deviceName = network.name
    return backing


def network_id_of(backing) -> Optional[str]:
    """Read the network identifier back off a card backing"""
    if isinstance(backing, vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo):
        return backing.port.portgroupKey if backing.port else None
    if isinstance(backing, vim.vm.device.VirtualEthernetCard.NetworkBackingInfo):
        return backing.network._moId if backing.network else None
    if isinstance(backing, vim.vm.device.VirtualEthernetCard.OpaqueNetworkBackingInfo):
        return backing.opaqueNetworkId
    return None


def network_id_for(network) -> str:
    """Identifier a card attached to network reports through network_id_of"""
    if isinstance(network, vim.dvs.DistributedVirtualPortgroup):
        return network.key
    if isinstance(network, vim.OpaqueNetwork):
        return network.summary.opaqueNetworkId
    return network._moId
