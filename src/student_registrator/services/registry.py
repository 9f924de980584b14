"""Device registry protocol and an in-memory implementation."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from student_registrator.core.exceptions import RegistryError
from student_registrator.domain.models import DeviceTarget
from student_registrator.settings import HARD_DEVICE_LIMIT

_DEVICE_LIST = TypeAdapter(list[DeviceTarget])


class DeviceRegistry(Protocol):
    """Where configured devices live. Storage is owned by the caller."""

    def list_devices(self) -> list[DeviceTarget]: ...

    def find_device_by_id(self, device_id: str) -> DeviceTarget | None: ...

    def replace_all(self, devices: Sequence[DeviceTarget]) -> None: ...


class InMemoryDeviceRegistry:
    def __init__(self, devices: Iterable[DeviceTarget] = (), *, max_devices: int = HARD_DEVICE_LIMIT):
        self._max_devices = min(max_devices, HARD_DEVICE_LIMIT)
        self._devices: list[DeviceTarget] = []
        self.replace_all(list(devices))

    @classmethod
    def from_json_file(cls, path: Path) -> "InMemoryDeviceRegistry":
        """Load a read-only snapshot from a JSON array of device objects."""
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise RegistryError(f"Cannot read device list {path}: {exc}") from exc
        try:
            devices = _DEVICE_LIST.validate_python(raw)
        except PydanticValidationError as exc:
            raise RegistryError(f"Invalid device list {path}: {exc}") from exc
        return cls(devices)

    def list_devices(self) -> list[DeviceTarget]:
        return list(self._devices)

    def find_device_by_id(self, device_id: str) -> DeviceTarget | None:
        return next((d for d in self._devices if d.id == device_id), None)

    def replace_all(self, devices: Sequence[DeviceTarget]) -> None:
        if len(devices) > self._max_devices:
            raise RegistryError(f"Maximum {self._max_devices} devices allowed")
        ids = [d.id for d in devices]
        if len(set(ids)) != len(ids):
            raise RegistryError("Duplicate device ids")
        self._devices = list(devices)
