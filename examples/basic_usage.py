"""
Example usage of the vmlifecycle library
"""

import logging
import os
from vmlifecycle import LifecycleSettings, VMLifecycleClient, VirtualMachineSpec, load_desired_state
from vmlifecycle.devices.descriptors import DiskDescriptor, NetworkInterfaceDescriptor
from vmlifecycle.models import CloneSettings, CustomizationInterface, CustomizationSettings, LinuxOptions

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# Use environment variables for security: export VSPHERE_PASSWORD=your_password
settings = LifecycleSettings(
    host="vcenter.example.com",
    username="administrator@vsphere.local",
    password=os.getenv("VSPHERE_PASSWORD", "your_password_here"),
    disable_ssl_verification=True  # For testing only
)

# Connect to vSphere
client = VMLifecycleClient.from_settings(settings)

# Build a VM from scratch: two disks, one NIC on a distributed port group
spec = VirtualMachineSpec(
    name="app-01",
    folder="apps/web",
    resource_pool_id="resgroup-1001",
    datastore_id="datastore-12",
    guest_id="rhel8_64Guest",
    num_cpus=2,
    memory_mb=4096,
    disks=[
        DiskDescriptor(size_gb=40),
        DiskDescriptor(size_gb=100, keep_on_remove=True),
    ],
    network_interfaces=[NetworkInterfaceDescriptor(network_id="dvportgroup-101")],
)

# Persist the identity as soon as it exists so a crash leaves nothing untracked
identities = []
identity = client.create(spec, record_identity=identities.append)
print(f"Created {spec.name} as {identity}")

observed = client.read(identity)
print(f"Power state: {observed.power_state}")
print(f"IP Address: {observed.default_ip_address}")
for device in observed.devices:
    print(f"  {device}")

# Grow the data disk and add memory; applying twice changes nothing the second time
spec.memory_mb = 8192
spec.disks[1] = DiskDescriptor(size_gb=200, keep_on_remove=True)
result = client.update(identity, spec)
print(f"Changed: {result.changed}, rebooted: {result.rebooted}")
print(f"Second apply changed: {client.update(identity, spec).changed}")

# Move the VM to another datastore in one relocation task
spec.datastore_id = "datastore-14"
print(f"Migrated: {client.update(identity, spec).migrated}")

# Clone from a template with Linux guest customization
clone_spec = VirtualMachineSpec(
    name="app-02",
    resource_pool_id="resgroup-1001",
    guest_id="rhel8_64Guest",
    num_cpus=2,
    memory_mb=4096,
    disks=[DiskDescriptor(size_gb=40)],
    network_interfaces=[NetworkInterfaceDescriptor(network_id="dvportgroup-101")],
    clone=CloneSettings(
        template_uuid="421c6a10-0d7b-4c4b-8ad1-1b2f5c3c9a77",
        customize=CustomizationSettings(
            linux_options=LinuxOptions(host_name="app-02", domain="example.com"),
            network_interfaces=[CustomizationInterface(ipv4_address="192.168.100.20", ipv4_netmask=24)],
            ipv4_gateway="192.168.100.1",
            dns_server_list=["192.168.100.2"],
        ),
    ),
)
clone_identity = client.create(clone_spec)

# Desired state can also come from YAML
if os.path.exists("app-03.yaml"):
    client.create(load_desired_state("app-03.yaml"))

# Cleanup; the preserved data disk is detached, not destroyed
client.delete(identity, spec)
client.delete(clone_identity, clone_spec)
client.vsphere.disconnect()
