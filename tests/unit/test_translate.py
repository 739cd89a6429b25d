"""
Unit tests for pyVmomi device translation
"""

import pytest
from unittest.mock import Mock
from pyVmomi import vim
from vmlifecycle.devices.descriptors import (
    ChangeOperation,
    DeviceChange,
    DiskDescriptor,
    FileOperation,
    NetworkInterfaceDescriptor,
    OpticalDriveDescriptor,
    SCSIControllerDescriptor,
)
from vmlifecycle.devices.translate import DeviceSpecTranslator, apply_attributes, read_devices
from vmlifecycle.exceptions import ValidationError
from tests.mocks.vsphere import devices as hw

pytestmark = pytest.mark.unit

KB_PER_GB = 1024 * 1024


def operations(specs):
    return [str(s.operation) for s in specs]


@pytest.fixture
def translator(raw_devices, resolver):
    return DeviceSpecTranslator(raw_devices, resolver)


class TestReadDevices:
    """Test cases for reading pyVmomi devices into descriptors"""

    def test_read_devices(self, raw_devices):
        """Test conversion of controllers, disks and NICs"""
        devices = read_devices(raw_devices)

        assert devices[0] == SCSIControllerDescriptor(bus_number=0, controller_type='pvscsi',
                                                      sharing='noSharing', key=1000)
        disk = devices[1]
        assert isinstance(disk, DiskDescriptor)
        assert disk.size_gb == 20
        assert disk.address == (0, 0)
        assert disk.datastore_id == 'datastore-1'
        assert disk.path == 'vm/disk-2000.vmdk'
        assert disk.label == 'Hard disk 1'
        assert disk.key == 2000
        nic = devices[2]
        assert nic == NetworkInterfaceDescriptor(network_id='network-1', adapter_type='vmxnet3',
                                                 mac_address='00:50:56:00:00:01', key=4000)
        assert len(devices) == 3

    def test_disk_on_second_bus(self):
        """Test that a disk takes its bus number from its controller"""
        devices = read_devices([
            hw.scsi_controller(0, 1000),
            hw.scsi_controller(1, 1001, cls=vim.vm.device.VirtualLsiLogicSASController),
            hw.disk(2000, 3, 10, controller_key=1001),
        ])

        assert devices[1].controller_type == 'lsilogic-sas'
        assert devices[2].address == (1, 3)

    def test_ide_disk_skipped(self):
        """Test that disks outside the SCSI buses are ignored"""
        devices = read_devices([hw.ide_controller(0, 200), hw.disk(2000, 0, 10, controller_key=200)])

        assert devices == []

    def test_dvs_nic_and_static_mac(self):
        """Test DVS portgroup ids and manual MAC addresses"""
        card = hw.dvs_nic(4001)
        card.addressType = 'manual'

        nic = read_devices([card])[0]

        assert nic.network_id == 'dvportgroup-10'
        assert nic.use_static_mac is True

    def test_optical_drives(self):
        """Test ISO and client device drives"""
        devices = read_devices([
            hw.cdrom(3000, iso='[datastore1] iso/os.iso'),
            hw.cdrom(3001),
        ])

        assert devices == [
            OpticalDriveDescriptor(datastore_id='datastore-1', path='iso/os.iso', key=3000),
            OpticalDriveDescriptor(client_device=True, key=3001),
        ]


class TestDiskSpecs:
    """Test cases for disk device specs"""

    def test_add_disk_with_path(self, raw_devices, resolver):
        """Test a new disk in a datastore subdirectory"""
        directory_creator = Mock()
        translator = DeviceSpecTranslator(raw_devices, resolver, directory_creator=directory_creator)
        change = DeviceChange(
            ChangeOperation.ADD,
            DiskDescriptor(size_gb=10, unit_number=1, datastore_id='datastore-2', path='vm/data/disk.vmdk'),
            file_operation=FileOperation.CREATE,
        )

        specs = translator.translate([change])

        assert operations(specs) == ['add']
        spec = specs[0]
        assert spec.fileOperation == 'create'
        assert spec.device.key < 0
        assert spec.device.controllerKey == 1000
        assert spec.device.unitNumber == 1
        assert spec.device.capacityInKB == 10 * KB_PER_GB
        assert spec.device.capacityInBytes == 10 * KB_PER_GB * 1024
        assert spec.device.backing.fileName == '[datastore-2] vm/data/disk.vmdk'
        directory_creator.ensure_parent.assert_called_once_with(
            resolver('Datastore', 'datastore-2'), 'vm/data/disk.vmdk', None)

    def test_add_disk_without_datastore(self, translator):
        """Test that a disk without datastore lands beside the VM"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.ADD, DiskDescriptor(size_gb=5, unit_number=1),
            file_operation=FileOperation.CREATE)])

        assert specs[0].device.backing.fileName == ''
        assert specs[0].device.backing.thinProvisioned is True

    def test_attach_existing_disk(self, translator):
        """Test that an attached disk carries no create file operation"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.ADD,
            DiskDescriptor(attach=True, unit_number=1, datastore_id='datastore-2', path='data/disk.vmdk'))])

        assert specs[0].fileOperation is None
        assert specs[0].device.backing.fileName == '[datastore-2] data/disk.vmdk'

    def test_remove_destroys_file(self, translator, raw_devices):
        """Test that a removed disk destroys its backing file"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.REMOVE, DiskDescriptor(size_gb=20, unit_number=0, key=2000),
            file_operation=FileOperation.DESTROY)])

        assert operations(specs) == ['remove']
        assert specs[0].fileOperation == 'destroy'
        assert specs[0].device is raw_devices[2]

    def test_remove_keeps_file(self, translator):
        """Test that a preserved disk is only detached"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.REMOVE, DiskDescriptor(size_gb=20, unit_number=0, key=2000))])

        assert specs[0].fileOperation is None

    def test_grow_disk(self, translator):
        """Test a disk size edit"""
        previous = DiskDescriptor(size_gb=20, unit_number=0, key=2000)
        specs = translator.translate([DeviceChange(
            ChangeOperation.EDIT, DiskDescriptor(size_gb=30, unit_number=0, key=2000), previous=previous)])

        assert operations(specs) == ['edit']
        assert specs[0].device.capacityInKB == 30 * KB_PER_GB

    def test_edit_unknown_device(self, translator):
        """Test that an edit of a key missing from the VM fails"""
        with pytest.raises(ValidationError, match="not found on VM"):
            translator.translate([DeviceChange(
                ChangeOperation.EDIT, DiskDescriptor(size_gb=30, unit_number=0, key=9999))])


class TestControllerSpecs:
    """Test cases for SCSI controller specs"""

    def test_new_bus_used_by_new_disk(self, translator):
        """Test that a disk on a new bus points at the new controller"""
        specs = translator.translate([
            DeviceChange(ChangeOperation.ADD, SCSIControllerDescriptor(bus_number=1)),
            DeviceChange(ChangeOperation.ADD, DiskDescriptor(size_gb=1, unit_number=0, bus_number=1),
                         file_operation=FileOperation.CREATE),
        ])

        controller, disk = (s.device for s in specs)
        assert isinstance(controller, vim.vm.device.ParaVirtualSCSIController)
        assert controller.busNumber == 1
        assert disk.controllerKey == controller.key
        assert disk.key != controller.key

    def test_sharing_edit(self, translator, raw_devices):
        """Test a sharing change on the same controller class"""
        previous = SCSIControllerDescriptor(bus_number=0, key=1000)
        specs = translator.translate([DeviceChange(
            ChangeOperation.EDIT,
            SCSIControllerDescriptor(bus_number=0, sharing='virtualSharing', key=1000),
            previous=previous)])

        assert operations(specs) == ['edit']
        assert raw_devices[1].sharedBus == 'virtualSharing'

    def test_type_change_swaps_controller(self, resolver):
        """Test that a type change adds, re-points and removes"""
        old = hw.scsi_controller(0, 1000, cls=vim.vm.device.VirtualLsiLogicController)
        disk = hw.disk(2000, 0, 10, controller_key=1000)
        translator = DeviceSpecTranslator([old, disk], resolver)

        specs = translator.translate([DeviceChange(
            ChangeOperation.EDIT,
            SCSIControllerDescriptor(bus_number=0, controller_type='pvscsi', key=1000),
            previous=SCSIControllerDescriptor(bus_number=0, controller_type='lsilogic', key=1000))])

        assert operations(specs) == ['add', 'edit', 'remove']
        new = specs[0].device
        assert isinstance(new, vim.vm.device.ParaVirtualSCSIController)
        assert specs[1].device is disk
        assert disk.controllerKey == new.key
        assert specs[2].device is old

    def test_one_edit_per_device(self, resolver):
        """Test that a re-pointed disk that also grows gets a single edit"""
        old = hw.scsi_controller(0, 1000, cls=vim.vm.device.VirtualLsiLogicController)
        disk = hw.disk(2000, 0, 10, controller_key=1000)
        translator = DeviceSpecTranslator([old, disk], resolver)

        specs = translator.translate([
            DeviceChange(ChangeOperation.EDIT,
                         SCSIControllerDescriptor(bus_number=0, controller_type='pvscsi', key=1000),
                         previous=SCSIControllerDescriptor(bus_number=0, controller_type='lsilogic', key=1000)),
            DeviceChange(ChangeOperation.EDIT, DiskDescriptor(size_gb=15, unit_number=0, key=2000),
                         previous=DiskDescriptor(size_gb=10, unit_number=0, key=2000)),
        ])

        assert operations(specs) == ['add', 'edit', 'remove']
        assert specs[1].device.capacityInKB == 15 * KB_PER_GB
        assert specs[1].device.controllerKey == specs[0].device.key


class TestNetworkInterfaceSpecs:
    """Test cases for network adapter specs"""

    def test_add_generated_mac(self, translator):
        """Test a new card with a generated MAC"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.ADD, NetworkInterfaceDescriptor(network_id='network-2', adapter_type='e1000e'))])

        card = specs[0].device
        assert isinstance(card, vim.vm.device.VirtualE1000e)
        assert card.addressType == 'generated'
        assert card.backing.deviceName == 'network-2'
        assert card.connectable.startConnected is True

    def test_add_static_mac(self, translator):
        """Test a new card with a static MAC"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.ADD,
            NetworkInterfaceDescriptor(network_id='network-2', mac_address='00:50:56:aa:bb:cc',
                                       use_static_mac=True))])

        assert specs[0].device.addressType == 'manual'
        assert specs[0].device.macAddress == '00:50:56:aa:bb:cc'

    def test_network_edit(self, translator, raw_devices, resolver):
        """Test moving a card to another network"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.EDIT,
            NetworkInterfaceDescriptor(network_id='network-3', key=4000),
            previous=NetworkInterfaceDescriptor(network_id='network-1', key=4000))])

        assert operations(specs) == ['edit']
        assert specs[0].device is raw_devices[3]
        assert raw_devices[3].backing.network is resolver('Network', 'network-3')

    def test_remove(self, translator, raw_devices):
        """Test removing a card"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.REMOVE, NetworkInterfaceDescriptor(network_id='network-1', key=4000))])

        assert operations(specs) == ['remove']
        assert specs[0].device is raw_devices[3]


class TestOpticalDriveSpecs:
    """Test cases for CD/DVD drive specs"""

    def test_add_on_free_ide_controller(self, translator):
        """Test that a new drive goes on the IDE controller"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.ADD, OpticalDriveDescriptor(client_device=True))])

        drive = specs[0].device
        assert drive.controllerKey == 200
        assert isinstance(drive.backing, vim.vm.device.VirtualCdrom.RemotePassthroughBackingInfo)

    def test_add_iso(self, translator):
        """Test an ISO backed drive"""
        specs = translator.translate([DeviceChange(
            ChangeOperation.ADD, OpticalDriveDescriptor(datastore_id='datastore-1', path='iso/os.iso'))])

        assert specs[0].device.backing.fileName == '[datastore-1] iso/os.iso'

    def test_no_free_ide_slot(self, resolver):
        """Test that full IDE controllers reject another drive"""
        translator = DeviceSpecTranslator(
            [hw.ide_controller(0, 200), hw.cdrom(3000, 200), hw.cdrom(3001, 200)], resolver)

        with pytest.raises(ValidationError, match="IDE"):
            translator.translate([DeviceChange(
                ChangeOperation.ADD, OpticalDriveDescriptor(client_device=True))])


class TestApplyAttributes:
    """Test cases for copying attributes onto a ConfigSpec"""

    def test_apply_attributes(self):
        """Test top-level and boot option attributes"""
        spec = apply_attributes(vim.vm.ConfigSpec(), {
            'num_cpus': 4, 'memory_mb': 8192, 'annotation': 'web', 'boot_delay': 500,
        })

        assert spec.numCPUs == 4
        assert spec.memoryMB == 8192
        assert spec.annotation == 'web'
        assert spec.bootOptions.bootDelay == 500

    def test_unknown_attribute(self):
        """Test that unknown attributes are rejected"""
        with pytest.raises(ValueError):
            apply_attributes(vim.vm.ConfigSpec(), {'num_gpus': 1})
