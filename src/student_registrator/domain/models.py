"""Pydantic models representing key domain entities."""
from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from student_registrator.domain.enums import DeviceLinkStatus, ProvisioningStatus


class CamelModel(BaseModel):
    """Base for models exchanged with the UI bridge and the backend (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeviceTarget(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    host: str
    port: int = 80
    username: str
    password: str = Field(repr=False)
    location: str | None = None
    backend_id: str | None = None
    device_id: str | None = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def label(self) -> str:
        return f"{self.name} ({self.host}:{self.port})"


class EnrollmentRequest(CamelModel):
    """A single registration attempt as submitted by the UI bridge."""

    model_config = ConfigDict(extra="forbid")

    name: str
    gender: str
    first_name: str | None = None
    last_name: str | None = None
    father_name: str | None = None
    parent_phone: str | None = None
    school_id: str | None = None
    class_id: str | None = None
    face_image_base64: str
    # None targets every known device; an empty list means backend-only.
    target_device_ids: list[str] | None = None
    backend_url: str | None = None
    backend_token: str | None = None

    @field_validator("backend_url", "backend_token", "school_id", "class_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("target_device_ids", mode="before")
    @classmethod
    def _normalize_targets(cls, value):
        if value is None:
            return None
        seen: list[str] = []
        for item in value:
            item = str(item).strip()
            if item and item not in seen:
                seen.append(item)
        return seen

    @property
    def full_name(self) -> str:
        first = (self.first_name or "").strip()
        last = (self.last_name or "").strip()
        combined = f"{last} {first}".strip()
        return combined or self.name.strip()

    @property
    def backend_only(self) -> bool:
        return self.target_device_ids is not None and not self.target_device_ids


class ActionResult(CamelModel):
    ok: bool
    status_code: int | None = None
    status_string: str | None = None
    error_message: str | None = None

    @classmethod
    def failure(cls, status_string: str, error_message: str | None) -> "ActionResult":
        return cls(ok=False, status_string=status_string, error_message=error_message)

    def describe(self) -> str:
        return self.error_message or self.status_string or "unknown error"


class DeviceOutcome(CamelModel):
    device_id: str
    device_name: str
    backend_device_id: str | None = None
    connection: ActionResult
    user_create: ActionResult | None = None
    face_upload: ActionResult | None = None

    @property
    def ok(self) -> bool:
        return bool(
            self.connection.ok
            and self.user_create is not None
            and self.user_create.ok
            and self.face_upload is not None
            and self.face_upload.ok
        )

    def error_summary(self) -> str | None:
        if not self.connection.ok:
            return f"Connection failed: {self.connection.describe()}"
        if self.user_create is not None and not self.user_create.ok:
            return f"User create failed: {self.user_create.describe()}"
        if self.face_upload is not None and not self.face_upload.ok:
            return f"Face upload failed: {self.face_upload.describe()}"
        return None


class RegisterResult(CamelModel):
    employee_no: str
    provisioning_id: str | None = None
    results: list[DeviceOutcome] = Field(default_factory=list)


class RecreateResult(CamelModel):
    employee_no: str
    delete_result: ActionResult
    create_result: ActionResult
    face_upload: ActionResult


class ProvisioningDeviceLink(CamelModel):
    id: str
    device_id: str | None = None
    name: str | None = None
    location: str | None = None
    status: DeviceLinkStatus = DeviceLinkStatus.PENDING
    last_error: str | None = None


class ProvisioningRecord(CamelModel):
    provisioning_id: str
    status: ProvisioningStatus = ProvisioningStatus.IN_PROGRESS
    device_student_id: str
    student_id: str | None = None
    target_devices: list[ProvisioningDeviceLink] = Field(default_factory=list)


@dataclass(frozen=True)
class SuccessfulDeviceEntry:
    """A device where identity-create succeeded; owes a delete if the saga aborts."""

    target: DeviceTarget
    backend_device_id: str | None
    external_device_id: str | None
    name: str
    location: str | None
