from .base import EmulatorContext, EmulatorInstance, InstanceState
from .coordinator import LifecycleCoordinator, SessionState
from .factory import EMULATOR_CLASSES, build_coordinator, build_instances
from .functions import FunctionsEmulator
from .hosting import HostingEmulator
from .java import DatabaseEmulator, FirestoreEmulator, JavaEmulator
from .ports import PortAllocator
from .registry import EmulatorRegistry
from .types import EmulatorInfo, EndpointBinding, ExternalProcessCommand

__all__ = [
    "EMULATOR_CLASSES",
    "DatabaseEmulator",
    "EmulatorContext",
    "EmulatorInfo",
    "EmulatorInstance",
    "EmulatorRegistry",
    "EndpointBinding",
    "ExternalProcessCommand",
    "FirestoreEmulator",
    "FunctionsEmulator",
    "HostingEmulator",
    "InstanceState",
    "JavaEmulator",
    "LifecycleCoordinator",
    "PortAllocator",
    "SessionState",
    "build_coordinator",
    "build_instances",
]
