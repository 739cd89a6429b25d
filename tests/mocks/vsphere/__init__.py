"""
vSphere mock infrastructure for testing
"""
from .base import MockVSphereObject, managed_object
from .service import MockServiceInstance
from .vm import MockVirtualMachine
from .tasks import MockTask, completed_task, failed_task
from .events import MockEventCollector, MockEventManager, MockEventStream

__all__ = [
    'MockVSphereObject',
    'managed_object',
    'MockServiceInstance',
    'MockVirtualMachine',
    'MockTask',
    'completed_task',
    'failed_task',
    'MockEventCollector',
    'MockEventManager',
    'MockEventStream',
]
