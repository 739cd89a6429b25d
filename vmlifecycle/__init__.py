"""
vmlifecycle - declarative virtual machine lifecycle management for vSphere
Provisioning, reconfiguration, guest customization and migration
"""

__version__ = "0.1.0"
__author__ = "vmlifecycle Development Team"

from .client import VMLifecycleClient
from .config import LifecycleSettings
from .exceptions import (
    VMLifecycleError,
    ValidationError,
    NotFoundError,
    VMNotFoundError,
    RemoteFaultError,
    CustomizationError,
    TimeoutError,
    RollbackCompoundError,
)
from .models import VirtualMachineIdentity, VirtualMachineSpec, ObservedState, load_desired_state

__all__ = [
    "VMLifecycleClient",
    "LifecycleSettings",
    "VMLifecycleError",
    "ValidationError",
    "NotFoundError",
    "VMNotFoundError",
    "RemoteFaultError",
    "CustomizationError",
    "TimeoutError",
    "RollbackCompoundError",
    "VirtualMachineIdentity",
    "VirtualMachineSpec",
    "ObservedState",
    "load_desired_state",
]
