"""
VM lifecycle exceptions
"""


class VMLifecycleError(Exception):
    """Base exception for all VM lifecycle errors"""
    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class ConnectionError(VMLifecycleError):
    """Connection-related errors"""
    pass


class AuthenticationError(VMLifecycleError):
    """Authentication failure"""
    pass


class ValidationError(VMLifecycleError):
    """Desired state is internally inconsistent; never retried"""
    pass


class NotFoundError(VMLifecycleError):
    """A referenced inventory object no longer resolves"""
    pass


class VMNotFoundError(NotFoundError):
    """The virtual machine itself no longer resolves"""
    pass


class RemoteFaultError(VMLifecycleError):
    """The management endpoint rejected or failed a submitted task"""
    pass


class CustomizationError(RemoteFaultError):
    """Guest OS customization reported a failure"""
    pass


class TimeoutError(VMLifecycleError):
    """A wait exceeded its bound; the remote task is left running"""
    pass


ROLLBACK_ERROR_TEMPLATE = """
WARNING: Dangling resource!
There was an error reconfiguring virtual machine {name!r} after creation:
{original}
Additionally, there was an error removing the virtual machine:
{delete}
You will need to remove this virtual machine manually before trying again.
"""


class RollbackCompoundError(VMLifecycleError):
    """Cleanup after a failed post-create step failed as well"""
    def __init__(self, vm_name, original_error, delete_error):
        super().__init__(
            ROLLBACK_ERROR_TEMPLATE.format(
                name=vm_name, original=original_error, delete=delete_error),
            details={'vm_name': vm_name},
        )
        self.original_error = original_error
        self.delete_error = delete_error
