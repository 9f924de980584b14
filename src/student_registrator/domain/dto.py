"""Pydantic DTOs for the device (ISAPI) and backend wire formats."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from student_registrator.domain.enums import DeviceLinkStatus
from student_registrator.domain.models import CamelModel


class DeviceInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    device_name: str | None = Field(default=None, alias="deviceName")
    device_id: str | None = Field(default=None, alias="deviceID")
    model: str | None = None
    serial_number: str | None = Field(default=None, alias="serialNumber")
    firmware_version: str | None = Field(default=None, alias="firmwareVersion")


class UserInfoValid(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enable: bool | None = None
    beginTime: str | None = None
    endTime: str | None = None
    timeType: str | None = None


class UserInfoEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    employee_no: str = Field(alias="employeeNo")
    name: str = ""
    gender: str | None = None
    num_of_face: int | None = Field(default=None, alias="numOfFace")
    face_url: str | None = Field(default=None, alias="faceURL")
    user_type: str | None = Field(default=None, alias="userType")
    valid: UserInfoValid | None = Field(default=None, alias="Valid")


class UserInfoSearch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_info: list[UserInfoEntry] | None = Field(default=None, alias="UserInfo")
    num_of_matches: int | None = Field(default=None, alias="numOfMatches")
    total_matches: int | None = Field(default=None, alias="totalMatches")
    response_status: str | None = Field(default=None, alias="responseStatusStrg")


class UserInfoSearchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_info_search: UserInfoSearch | None = Field(default=None, alias="UserInfoSearch")

    @property
    def users(self) -> list[UserInfoEntry]:
        if self.user_info_search is None or self.user_info_search.user_info is None:
            return []
        return self.user_info_search.user_info


class ProvisioningStartDTO(CamelModel):
    model_config = ConfigDict(extra="forbid")

    school_id: str
    full_name: str
    gender: str
    device_student_id: str | None = None
    class_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    father_name: str | None = None
    parent_phone: str | None = None
    face_image_base64: str | None = None
    target_device_ids: list[str] | None = None
    request_id: str


class DeviceResultReportDTO(CamelModel):
    backend_device_id: str | None = None
    device_external_id: str | None = None
    device_name: str | None = None
    device_location: str | None = None
    status: DeviceLinkStatus
    employee_no: str
    error: str | None = None


class ProvisioningFinalizeDTO(CamelModel):
    status: str = "FAILED"
    reason: str
