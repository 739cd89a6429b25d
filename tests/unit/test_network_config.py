"""
Unit tests for Network Configuration
"""

import pytest
from pyVmomi import vim
from vmlifecycle.infrastructure.vsphere.network_config import (
    adapter_type_of,
    ethernet_backing,
    network_id_of,
    new_ethernet_card,
)
from vmlifecycle.exceptions import ValidationError
from tests.mocks.vsphere import MockVSphereObject, managed_object

pytestmark = pytest.mark.unit


@pytest.fixture
def mock_network():
    """Standard vSwitch port group"""
    return managed_object(vim.Network, 'network-1', name='VM Network')


@pytest.fixture
def mock_dvs_portgroup():
    """Distributed vSwitch port group"""
    return managed_object(
        vim.dvs.DistributedVirtualPortgroup, 'dvportgroup-10',
        name='dvs-web', key='dvportgroup-10',
        config=MockVSphereObject(distributedVirtualSwitch=MockVSphereObject(uuid='50 2a 6d 3c')),
    )


class TestEthernetBacking:
    """Test cases for ethernet card backings"""

    def test_standard_vswitch(self, mock_network):
        """Test the backing for a standard port group"""
        backing = ethernet_backing(mock_network)

        assert isinstance(backing, vim.vm.device.VirtualEthernetCard.NetworkBackingInfo)
        assert backing.network is mock_network
        assert backing.deviceName == 'VM Network'

    def test_distributed_vswitch(self, mock_dvs_portgroup):
        """Test the backing for a distributed port group"""
        backing = ethernet_backing(mock_dvs_portgroup)

        assert isinstance(backing, vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo)
        assert backing.port.portgroupKey == 'dvportgroup-10'
        assert backing.port.switchUuid == '50 2a 6d 3c'

    def test_network_id_round_trip(self, mock_network, mock_dvs_portgroup):
        """Test that the network id reads back off either backing"""
        assert network_id_of(ethernet_backing(mock_network)) == 'network-1'
        assert network_id_of(ethernet_backing(mock_dvs_portgroup)) == 'dvportgroup-10'

    def test_network_id_of_opaque_network(self):
        """Test an NSX opaque network backing"""
        backing = vim.vm.device.VirtualEthernetCard.OpaqueNetworkBackingInfo(opaqueNetworkId='nsx-seg-1')

        assert network_id_of(backing) == 'nsx-seg-1'

    def test_network_id_of_unknown_backing(self):
        """Test backings that carry no network"""
        assert network_id_of(None) is None
        assert network_id_of(vim.vm.device.VirtualEthernetCard.NetworkBackingInfo()) is None
        assert network_id_of(vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo()) is None


class TestEthernetCards:
    """Test cases for ethernet card construction"""

    @pytest.mark.parametrize("adapter_type,card_class", [
        ('vmxnet3', vim.vm.device.VirtualVmxnet3),
        ('e1000', vim.vm.device.VirtualE1000),
        ('e1000e', vim.vm.device.VirtualE1000e),
    ])
    def test_new_ethernet_card(self, adapter_type, card_class):
        """Test creating each supported adapter type"""
        card = new_ethernet_card(adapter_type)

        assert isinstance(card, card_class)
        assert card.connectable.startConnected is True
        assert card.connectable.allowGuestControl is True
        assert adapter_type_of(card) == adapter_type

    def test_unknown_adapter_type(self):
        """Test an unsupported adapter type"""
        with pytest.raises(ValidationError, match="pcnet32"):
            new_ethernet_card('pcnet32')

    def test_adapter_type_of_unsupported_card(self):
        """Test that unsupported card classes map to None"""
        assert adapter_type_of(vim.vm.device.VirtualPCNet32()) is None
