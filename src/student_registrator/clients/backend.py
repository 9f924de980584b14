"""Client for the school backend's provisioning API."""
from __future__ import annotations

import asyncio
from typing import Any

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import ValidationError as PydanticValidationError

from student_registrator.core.exceptions import BackendError
from student_registrator.domain.dto import (
    DeviceResultReportDTO,
    ProvisioningFinalizeDTO,
    ProvisioningStartDTO,
)
from student_registrator.domain.enums import DeviceLinkStatus
from student_registrator.domain.models import ProvisioningRecord

logger = structlog.get_logger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class BackendApiClient:
    def __init__(self, *, base_url: str, token: str | None = None, timeout_s: float = 15.0):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_s = timeout_s
        self._client: ClientSession | None = None

    async def __aenter__(self) -> "BackendApiClient":
        self._client = ClientSession(timeout=ClientTimeout(total=self._timeout_s))
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client:
            await self._client.close()
            self._client = None

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if extra:
            headers.update(extra)
        return headers

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        if not self._client:
            raise RuntimeError("Client is not started; use 'async with BackendApiClient(...)'.")
        url = f"{self._base_url}{path}"
        try:
            async with self._client.request(
                method, url, json=json, headers=self._headers(headers)
            ) as resp:
                text = await resp.text()
                if not 200 <= resp.status < 300:
                    raise BackendError(
                        f"{method} {path} failed: HTTP {resp.status}: {text[:2000]}",
                        status=resp.status,
                        body=text,
                    )
                if not text:
                    return None
                try:
                    return await resp.json(content_type=None)
                except ValueError as exc:
                    raise BackendError(
                        f"{method} {path} returned invalid JSON", status=resp.status, body=text
                    ) from exc
        except asyncio.TimeoutError as exc:
            raise BackendError(f"{method} {path} timed out ({self._base_url})") from exc
        except ClientError as exc:
            raise BackendError(f"{method} {path} failed ({self._base_url}): {exc}") from exc

    async def start_provisioning(
        self,
        *,
        school_id: str,
        full_name: str,
        gender: str,
        device_student_id: str | None,
        class_id: str | None,
        first_name: str | None,
        last_name: str | None,
        father_name: str | None,
        parent_phone: str | None,
        face_image_base64: str | None,
        target_device_ids: list[str] | None,
        idempotency_key: str,
    ) -> ProvisioningRecord:
        """Create the provisioning record; safe to repeat with the same idempotency key."""
        payload = ProvisioningStartDTO(
            school_id=school_id,
            full_name=full_name,
            gender=gender,
            device_student_id=device_student_id,
            class_id=class_id,
            first_name=first_name,
            last_name=last_name,
            father_name=father_name,
            parent_phone=parent_phone,
            face_image_base64=face_image_base64,
            target_device_ids=target_device_ids,
            request_id=idempotency_key,
        )
        data = await self._call(
            "POST",
            "/api/students/provision",
            json=payload.model_dump(by_alias=True, exclude_none=True),
            headers={IDEMPOTENCY_HEADER: idempotency_key},
        )
        try:
            return ProvisioningRecord.model_validate(data)
        except PydanticValidationError as exc:
            raise BackendError(f"Unexpected provisioning response: {exc}", body=str(data)) from exc

    async def report_device_result(
        self,
        provisioning_id: str,
        *,
        backend_device_id: str | None,
        external_device_id: str | None,
        device_name: str | None,
        device_location: str | None,
        status: DeviceLinkStatus,
        employee_no: str,
        error_message: str | None = None,
    ) -> None:
        payload = DeviceResultReportDTO(
            backend_device_id=backend_device_id,
            device_external_id=external_device_id,
            device_name=device_name,
            device_location=device_location,
            status=status,
            employee_no=employee_no,
            error=error_message,
        )
        await self._call(
            "POST",
            f"/api/provisioning/{provisioning_id}/device-result",
            json=payload.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    async def finalize_provisioning_failure(self, provisioning_id: str, reason: str) -> None:
        payload = ProvisioningFinalizeDTO(reason=reason)
        await self._call(
            "POST",
            f"/api/provisioning/{provisioning_id}/finalize",
            json=payload.model_dump(by_alias=True),
        )
        logger.info("provisioning finalized as failed", provisioning_id=provisioning_id)

    async def get_provisioning(self, provisioning_id: str) -> ProvisioningRecord:
        data = await self._call("GET", f"/api/provisioning/{provisioning_id}")
        try:
            return ProvisioningRecord.model_validate(data)
        except PydanticValidationError as exc:
            raise BackendError(f"Unexpected provisioning response: {exc}", body=str(data)) from exc
