#!/usr/bin/env python3
"""
Integration tests for the VM lifecycle against a live vCenter

Set VSPHERE_HOST, VSPHERE_USERNAME, VSPHERE_PASSWORD plus
VSPHERE_TEST_RESOURCE_POOL, VSPHERE_TEST_DATASTORE and VSPHERE_TEST_NETWORK
to run them.
"""

import os
import uuid
import pytest
from vmlifecycle import LifecycleSettings, VMLifecycleClient, VirtualMachineSpec
from vmlifecycle.devices.descriptors import DiskDescriptor, NetworkInterfaceDescriptor
from vmlifecycle.exceptions import VMNotFoundError

REQUIRED_ENV = (
    'VSPHERE_HOST',
    'VSPHERE_USERNAME',
    'VSPHERE_PASSWORD',
    'VSPHERE_TEST_RESOURCE_POOL',
    'VSPHERE_TEST_DATASTORE',
    'VSPHERE_TEST_NETWORK',
)

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not all(os.environ.get(name) for name in REQUIRED_ENV),
        reason="Integration tests require a vCenter (VSPHERE_* environment variables)",
    ),
]


@pytest.fixture(scope="module")
def lifecycle():
    """Client connected to the vCenter named by the environment"""
    client = VMLifecycleClient.from_settings(LifecycleSettings.from_env())
    yield client
    client.vsphere.disconnect()


@pytest.fixture
def spec():
    """Small powered-on VM that does not wait for a guest OS"""
    return VirtualMachineSpec(
        name=f"vmlifecycle-it-{uuid.uuid4().hex[:8]}",
        resource_pool_id=os.environ['VSPHERE_TEST_RESOURCE_POOL'],
        datastore_id=os.environ['VSPHERE_TEST_DATASTORE'],
        guest_id='otherGuest64',
        num_cpus=1,
        memory_mb=512,
        disks=[DiskDescriptor(size_gb=1)],
        network_interfaces=[NetworkInterfaceDescriptor(network_id=os.environ['VSPHERE_TEST_NETWORK'])],
        wait_for_guest_net_timeout=0,
        shutdown_wait_timeout=0,
    )


class TestVMLifecycleIntegration:
    """End-to-end create, update and delete"""

    def test_create_update_delete(self, lifecycle, spec):
        """Test the full lifecycle of a bare VM"""
        recorded = []
        identity = lifecycle.create(spec, record_identity=recorded.append)
        try:
            assert recorded[0] == identity

            observed = lifecycle.read(identity)
            assert observed.name == spec.name
            assert observed.powered_on is True
            assert len(observed.devices) >= 3

            # Nothing drifted, so a second apply is a no-op
            assert lifecycle.update(identity, spec).changed is False

            spec.num_cpus = 2
            spec.disks = [DiskDescriptor(size_gb=2)]
            result = lifecycle.update(identity, spec)
            assert result.changed is True
            assert result.rebooted is True
            assert lifecycle.read(identity).num_cpus == 2
        finally:
            lifecycle.delete(identity, spec)

        assert lifecycle.exists(identity) is False
        with pytest.raises(VMNotFoundError):
            lifecycle.read(identity)
