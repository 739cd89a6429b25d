"""
Shared test fixtures and configuration for vmlifecycle tests
"""

import pytest
from unittest.mock import Mock
from pyVmomi import vim
from vmlifecycle.devices.descriptors import DiskDescriptor, SCSIControllerDescriptor
from vmlifecycle.exceptions import NotFoundError
from vmlifecycle.infrastructure.vsphere.client import VSphereClient
from vmlifecycle.infrastructure.vsphere.vm_manager import VMManager
from vmlifecycle.models import ObservedState, Placement, VirtualMachineIdentity, VirtualMachineSpec
from tests.mocks.vsphere import MockVSphereObject, MockVirtualMachine, managed_object
from tests.mocks.vsphere import devices as hw


RESOLVABLE_KINDS = {
    'ResourcePool': vim.ResourcePool,
    'HostSystem': vim.HostSystem,
    'Datastore': vim.Datastore,
    'Network': vim.Network,
}


@pytest.fixture
def mock_vsphere_service_instance():
    """Mock vSphere service instance"""
    from tests.mocks.vsphere import MockServiceInstance
    return MockServiceInstance()


@pytest.fixture
def inventory():
    """Objects the mock client resolves by kind and id"""
    return {}


@pytest.fixture
def resolver(inventory):
    """resolve(kind, id) backed by the inventory fixture

    Unknown ids resolve to a fresh pyVmomi-typed handle whose managed
    object id is the id itself.
    """
    def resolve(kind, object_id):
        key = (kind, object_id)
        if key not in inventory:
            vim_type = RESOLVABLE_KINDS.get(kind)
            if vim_type is None:
                raise NotFoundError(f"{kind} '{object_id}' not found")
            inventory[key] = managed_object(vim_type, object_id, name=object_id)
        return inventory[key]
    return resolve


@pytest.fixture
def mock_vsphere_client(resolver):
    """Mock vSphere client"""
    client = Mock(spec=VSphereClient)
    client.host = "vcenter.example.com"
    client.username = "admin@vsphere.local"
    client.password = "password"
    client.port = 443

    client.connect = Mock()
    client.disconnect = Mock()
    client.resolve = Mock(side_effect=resolver)
    client.wait_for_task = Mock(side_effect=lambda task, timeout=None: task.info.result)
    client.datacenter_of = Mock(return_value=MockVSphereObject(
        name='dc1', vmFolder=MockVSphereObject(name='vm', childEntity=[])))

    return client


@pytest.fixture
def raw_devices():
    """Hardware of a small VM: one pvscsi bus, one 20GB disk, one NIC, an IDE controller"""
    return [
        hw.ide_controller(0, 200),
        hw.scsi_controller(0, 1000),
        hw.disk(2000, 0, 20),
        hw.nic(4000),
    ]


@pytest.fixture
def mock_vm(raw_devices):
    """Mock vSphere VM object"""
    vm = MockVirtualMachine("test-vm", "poweredOn", instance_uuid="uuid-test-vm", devices=raw_devices)
    return vm


@pytest.fixture
def vm_manager(mock_vsphere_client):
    """VMManager over the mock client with no polling delays"""
    return VMManager(mock_vsphere_client, guest_net_poll_interval=0, shutdown_poll_interval=0)


@pytest.fixture
def desired_spec():
    """Desired state matching the mock VM's configuration"""
    return VirtualMachineSpec(
        name="test-vm",
        resource_pool_id="resgroup-1",
        datastore_id="datastore-1",
        guest_id="rhel8_64Guest",
        num_cpus=2,
        memory_mb=4096,
        disks=[DiskDescriptor(size_gb=20)],
    )


@pytest.fixture
def observed_state():
    """Observed state matching desired_spec"""
    return ObservedState(
        identity=VirtualMachineIdentity(instance_uuid="uuid-test-vm", moid="vm-42"),
        name="test-vm",
        power_state="poweredOn",
        guest_id="rhel8_64Guest",
        num_cpus=2,
        memory_mb=4096,
        firmware="bios",
        placement=Placement(resource_pool_id="resgroup-1", datastore_id="datastore-1"),
        devices=[
            SCSIControllerDescriptor(bus_number=0, key=1000),
            DiskDescriptor(size_gb=20, unit_number=0, bus_number=0, datastore_id="datastore-1", key=2000),
        ],
    )
