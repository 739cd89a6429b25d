"""
Rollback of partially created VMs
"""

import logging
from typing import Sequence

from ..devices.descriptors import DiskDescriptor
from ..exceptions import RollbackCompoundError


logger = logging.getLogger(__name__)


class RollbackController:
    """Deletes a VM whose post-create normalization failed"""

    def __init__(self, vm_manager):
        self.vm_manager = vm_manager

    def rollback(self, vm, error: Exception,
                 declared_disks: Sequence[DiskDescriptor] = ()) -> Exception:
        """
        Delete vm after error, detaching the preserved disks among declared_disks

        Returns:
            The original error when the delete succeeds, otherwise a
            RollbackCompoundError carrying both failures
        """
        name = vm.name
        logger.warning(f"Removing VM {name} after failed post-create step: {error}")
        try:
            self.vm_manager.delete_vm(vm, declared_disks=declared_disks)
        except Exception as delete_error:
            logger.error(f"Failed to remove VM {name}: {delete_error}")
            return RollbackCompoundError(name, error, delete_error)
        return error
