"""HTTP clients for terminals and the school backend."""
from student_registrator.clients.backend import BackendApiClient
from student_registrator.clients.device import DeviceApiClient
from student_registrator.clients.digest import DigestAuthClient

__all__ = ["BackendApiClient", "DeviceApiClient", "DigestAuthClient"]
