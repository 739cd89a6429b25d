"""
Guest OS customization
"""

import ipaddress
import logging
import threading
import time
from concurrent.futures import Future
from typing import List, Optional, Tuple

from pyVmomi import vim

from ..exceptions import CustomizationError, TimeoutError, ValidationError, VMLifecycleError
from ..models import CustomizationInterface, CustomizationSettings


logger = logging.getLogger(__name__)

CUSTOMIZATION_EVENT_TYPES = (
    'CustomizationSucceeded',
    'CustomizationFailed',
    'CustomizationLinuxIdentityFailed',
    'CustomizationNetworkSetupFailed',
    'CustomizationSysprepFailed',
    'CustomizationUnknownFailure',
)

WINDOWS_FAMILY = 'windowsGuest'


def _in_subnet(address: str, prefix: int, gateway: Optional[str]) -> bool:
    if not gateway:
        return False
    network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    return ipaddress.ip_address(gateway) in network


def _prefix_to_netmask(prefix: int) -> str:
    return str(ipaddress.IPv4Network(f"0.0.0.0/{prefix}").netmask)


def _identity(settings: CustomizationSettings, family: Optional[str]):
    option = settings.family_option
    if option == 'linux':
        if family == WINDOWS_FAMILY:
            raise ValidationError(
                f"customization of guest OS family {family} requires windows_options "
                f"or windows_sysprep_text")
        linux = settings.linux_options
        identity = vim.vm.customization.LinuxPrep()
        identity.hostName = vim.vm.customization.FixedName(name=linux.host_name)
        identity.domain = linux.domain
        identity.hwClockUTC = linux.hw_clock_utc
        if linux.time_zone:
            identity.timeZone = linux.time_zone
        return identity

    if family != WINDOWS_FAMILY:
        raise ValidationError(
            f"customization of guest OS family {family} requires linux_options")

    if option == 'sysprep':
        return vim.vm.customization.SysprepText(value=settings.windows_sysprep_text)

    windows = settings.windows_options
    gui = vim.vm.customization.GuiUnattended()
    gui.autoLogon = windows.auto_logon
    gui.autoLogonCount = windows.auto_logon_count
    gui.timeZone = windows.time_zone
    if windows.admin_password:
        gui.password = vim.vm.customization.Password(value=windows.admin_password, plainText=True)

    user_data = vim.vm.customization.UserData()
    user_data.computerName = vim.vm.customization.FixedName(name=windows.computer_name)
    user_data.fullName = windows.full_name
    user_data.orgName = windows.organization_name
    user_data.productId = windows.product_key or ''

    identification = vim.vm.customization.Identification()
    if windows.join_domain:
        identification.joinDomain = windows.join_domain
        identification.domainAdmin = windows.domain_admin_user
        if windows.domain_admin_password:
            identification.domainAdminPassword = vim.vm.customization.Password(
                value=windows.domain_admin_password, plainText=True)
    else:
        identification.joinWorkgroup = windows.workgroup or 'WORKGROUP'

    identity = vim.vm.customization.Sysprep()
    identity.guiUnattended = gui
    identity.userData = user_data
    identity.identification = identification
    if windows.run_once_command_list:
        identity.guiRunOnce = vim.vm.customization.GuiRunOnce(commandList=windows.run_once_command_list)
    return identity


def _adapter_mapping(nic: CustomizationInterface, settings: CustomizationSettings):
    ip_settings = vim.vm.customization.IPSettings()
    if nic.ipv4_address:
        ip_settings.ip = vim.vm.customization.FixedIp(ipAddress=nic.ipv4_address)
        ip_settings.subnetMask = _prefix_to_netmask(nic.ipv4_netmask or 32)
        if _in_subnet(nic.ipv4_address, nic.ipv4_netmask or 32, settings.ipv4_gateway):
            ip_settings.gateway = [settings.ipv4_gateway]
    else:
        ip_settings.ip = vim.vm.customization.DhcpIpGenerator()

    if nic.ipv6_address:
        ipv6 = vim.vm.customization.IPSettings.IpV6AddressSpec()
        ipv6.ip = [vim.vm.customization.FixedIpV6(
            ipAddress=nic.ipv6_address, subnetMask=nic.ipv6_netmask or 64)]
        if _in_subnet(nic.ipv6_address, nic.ipv6_netmask or 64, settings.ipv6_gateway):
            ipv6.gateway = [settings.ipv6_gateway]
        ip_settings.ipV6Spec = ipv6

    if nic.dns_server_list:
        ip_settings.dnsServerList = nic.dns_server_list
    if nic.dns_domain:
        ip_settings.dnsDomain = nic.dns_domain
    return vim.vm.customization.AdapterMapping(adapter=ip_settings)


def expand_customization_spec(settings: CustomizationSettings,
                              family: Optional[str]) -> vim.vm.customization.Specification:
    """
    Build the guest customization specification

    Args:
        settings: Declared customization settings
        family: Guest OS family of the target guest ID (e.g. linuxGuest)

    Raises:
        ValidationError: If the identity options do not fit the guest family
    """
    spec = vim.vm.customization.Specification()
    spec.identity = _identity(settings, family)
    spec.globalIPSettings = vim.vm.customization.GlobalIPSettings(
        dnsServerList=settings.dns_server_list,
        dnsSuffixList=settings.dns_suffix_list,
    )
    spec.nicSettingMap = [_adapter_mapping(nic, settings) for nic in settings.network_interfaces]
    return spec


class CustomizationWaiter:
    """
    One-shot gate on the guest customization result of a VM

    The event subscription is opened in the constructor, so the waiter must
    be built before customization is submitted. The first terminal condition
    (success, failure or timeout) resolves the waiter and closes the stream.
    """

    def __init__(self, client, vm, timeout: float, poll_interval: float = 1.0):
        self.vm_name = vm.name
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._future: Future = Future()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._stream = client.subscribe_events(vm, CUSTOMIZATION_EVENT_TYPES)
        self._thread = threading.Thread(
            target=self._watch, name=f"customization-{self.vm_name}", daemon=True)
        self._thread.start()

    def _resolve(self, error: Optional[Exception]) -> bool:
        with self._lock:
            if self._future.done():
                return False
            if error is None:
                self._future.set_result(None)
            else:
                self._future.set_exception(error)
        self._stop.set()
        return True

    def _terminal(self, events: List) -> Tuple[bool, Optional[Exception]]:
        for event in events:
            if isinstance(event, vim.event.CustomizationSucceeded):
                return True, None
            if isinstance(event, vim.event.CustomizationFailed):
                reason = getattr(event, 'fullFormattedMessage', None) or event._wsdlName
                return True, CustomizationError(
                    f"Customization of virtual machine {self.vm_name!r} failed: {reason}",
                    details={'event': event._wsdlName, 'reason': getattr(event, 'reason', None)},
                )
        return False, None

    def _watch(self) -> None:
        deadline = time.monotonic() + self.timeout
        try:
            while not self._future.done():
                finished, error = self._terminal(self._stream.read())
                if finished:
                    self._resolve(error)
                    break
                if time.monotonic() >= deadline:
                    self._resolve(TimeoutError(
                        f"Timeout waiting for customization of virtual machine {self.vm_name!r} "
                        f"to complete"))
                    break
                self._stop.wait(self.poll_interval)
        except Exception as e:
            self._resolve(e)
        finally:
            self._stream.close()

    def done(self) -> bool:
        return self._future.done()

    def error(self) -> Optional[Exception]:
        """Terminal error, or None on success or while still pending"""
        if not self._future.done():
            return None
        return self._future.exception()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until resolved; returns whether the waiter is done"""
        self._stop.wait(timeout)
        return self._future.done()

    def cancel(self) -> bool:
        return self._resolve(VMLifecycleError(f"Customization wait on {self.vm_name!r} was cancelled"))
