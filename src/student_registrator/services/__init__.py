"""Service layer exports."""
from student_registrator.services.provisioning import ProvisioningOrchestrator, ProvisioningSaga
from student_registrator.services.registry import DeviceRegistry, InMemoryDeviceRegistry

__all__ = [
    "DeviceRegistry",
    "InMemoryDeviceRegistry",
    "ProvisioningOrchestrator",
    "ProvisioningSaga",
]
