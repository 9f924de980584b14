"""Domain enums."""
from __future__ import annotations

from enum import Enum


class ProvisioningStatus(str, Enum):
    """Backend-side provisioning record states."""

    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class DeviceLinkStatus(str, Enum):
    """Per-device outcome recorded on the backend."""

    PENDING = "PENDING"
    OK = "OK"
    FAILED = "FAILED"


class SagaState(str, Enum):
    """Provisioning saga lifecycle."""

    INIT = "init"
    BACKEND_START = "backend_start"
    DEVICE_ROLLOUT = "device_rollout"
    COMMIT = "commit"
    ROLLBACK_DEVICES = "rollback_devices"
    ROLLBACK_FINALIZE = "rollback_finalize"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
