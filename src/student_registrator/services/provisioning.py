"""Provisioning saga: backend start, per-device rollout, compensating rollback.

A registration is all-or-nothing across the backend and the terminals only
where that is achievable: individual device failures are recorded and the
rollout continues, while backend failures (start, forward reporting) abort
the saga and trigger compensation:

* every device that accepted the identity gets a delete for the final
  employee number;
* the backend is told each rolled-back device FAILED;
* the backend record is finalized as FAILED.

Rollback collects every error instead of stopping at the first one, and the
error raised to the caller keeps the original cause, the rollback errors and
any finalize failure.
"""
from __future__ import annotations

import asyncio
import base64
import secrets
import string
from contextlib import AsyncExitStack
from datetime import datetime
from typing import Callable
from uuid import uuid4

import structlog

from student_registrator.clients.backend import BackendApiClient
from student_registrator.clients.device import DeviceApiClient, decode_face_image
from student_registrator.core.exceptions import (
    BackendError,
    DeviceNotFoundError,
    DeviceProtocolError,
    InvalidImageError,
    InvalidSagaTransitionError,
    RegistratorError,
    RegistryError,
    SagaAbortedError,
    TransportError,
    ValidationError,
)
from student_registrator.domain.dto import DeviceInfo, UserInfoSearchResponse
from student_registrator.domain.enums import DeviceLinkStatus, SagaState
from student_registrator.domain.models import (
    ActionResult,
    DeviceOutcome,
    DeviceTarget,
    EnrollmentRequest,
    RecreateResult,
    RegisterResult,
    SuccessfulDeviceEntry,
)
from student_registrator.services.registry import DeviceRegistry
from student_registrator.services.state_machine import validate_saga_transition
from student_registrator.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

DeviceClientFactory = Callable[[DeviceTarget], DeviceApiClient]
BackendClientFactory = Callable[[str, str | None], BackendApiClient]

DEVICE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def generate_employee_no(length: int = 10) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def is_numeric_employee_no(value: str | None) -> bool:
    # str.isdigit() alone accepts non-ASCII digits that terminals reject
    return bool(value) and value.isascii() and value.isdigit()


def validity_window(now: datetime, years: int) -> tuple[str, str]:
    try:
        end = now.replace(year=now.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        end = now.replace(year=now.year + years, day=28)
    return now.strftime(DEVICE_TIME_FORMAT), end.strftime(DEVICE_TIME_FORMAT)


class ProvisioningSaga:
    """One registration attempt. Not reusable: create a new saga per attempt."""

    def __init__(
        self,
        request: EnrollmentRequest,
        *,
        registry: DeviceRegistry,
        settings: Settings,
        device_client_factory: DeviceClientFactory,
        backend_client_factory: BackendClientFactory,
    ):
        self.request = request
        self._registry = registry
        self._settings = settings
        self._device_client_factory = device_client_factory
        self._backend_client_factory = backend_client_factory

        self.state = SagaState.INIT
        self.employee_no = generate_employee_no(settings.employee_no_length)
        self.idempotency_key = str(uuid4())
        self.provisioning_id: str | None = None
        # URL and token travel together: the default token only goes to the default backend.
        if request.backend_url:
            self.backend_url, self.backend_token = request.backend_url, request.backend_token
        else:
            self.backend_url, self.backend_token = settings.backend_url, settings.backend_token

        self.successful_devices: list[SuccessfulDeviceEntry] = []
        self.outcomes: dict[str, DeviceOutcome] = {}
        self.abort_causes: list[str] = []
        self.rollback_errors: list[str] = []
        self.finalize_error: str | None = None

        self._devices: list[DeviceTarget] = []
        self._updated_devices: dict[str, DeviceTarget] = {}
        self._backend_device_map: dict[str, str] = {}
        self._clients: dict[str, DeviceApiClient] = {}
        self._backend: BackendApiClient | None = None

    def _transition(self, new: SagaState) -> None:
        validate_saga_transition(self.state, new)
        logger.debug("saga transition", previous=self.state.value, state=new.value)
        self.state = new

    def validate(self) -> None:
        """Reject the request before any network call; snapshots the registry."""
        request = self.request
        settings = self._settings
        if len(request.face_image_base64) > settings.max_face_image_base64_length:
            raise ValidationError(
                f"Face image is too large. Max {settings.max_face_image_bytes // 1024} KB."
            )
        devices = self._registry.list_devices()
        if len(devices) > settings.max_devices:
            raise ValidationError(f"Maximum {settings.max_devices} devices allowed")
        if not devices and not request.backend_only:
            raise ValidationError("No devices configured")
        if self.backend_url and not request.school_id:
            raise ValidationError("schoolId is required when backendUrl is set")
        if request.backend_only and not self.backend_url:
            raise ValidationError("Backend-only registration requires backendUrl")
        self._devices = devices

    async def run(self) -> RegisterResult:
        if self.state is not SagaState.INIT:
            raise InvalidSagaTransitionError("Saga has already been run")
        self.validate()

        with structlog.contextvars.bound_contextvars(saga_id=self.idempotency_key):
            async with AsyncExitStack() as stack:
                if self.backend_url:
                    self._backend = await stack.enter_async_context(
                        self._backend_client_factory(self.backend_url, self.backend_token)
                    )
                    self._transition(SagaState.BACKEND_START)
                    try:
                        await self._start_backend()
                    except BackendError as exc:
                        self.abort_causes.append(f"Backend provisioning failed: {exc}")
                        await self._abort()

                self._transition(SagaState.DEVICE_ROLLOUT)
                targets = self._select_targets()
                for target in targets:
                    self._clients[target.id] = await stack.enter_async_context(
                        self._device_client_factory(target)
                    )
                await self._rollout(targets)

                if self.abort_causes:
                    await self._abort()

                self._transition(SagaState.COMMIT)
                self._persist_registry_changes()
                self._transition(SagaState.SUCCEEDED)

        results = [self.outcomes[t.id] for t in targets if t.id in self.outcomes]
        logger.info(
            "registration completed",
            employee_no=self.employee_no,
            provisioning_id=self.provisioning_id,
            devices=len(results),
            failed_devices=sum(1 for r in results if not r.ok),
        )
        return RegisterResult(
            employee_no=self.employee_no,
            provisioning_id=self.provisioning_id,
            results=results,
        )

    async def _start_backend(self) -> None:
        assert self._backend is not None
        request = self.request
        record = await self._backend.start_provisioning(
            school_id=request.school_id or "",
            full_name=request.full_name,
            gender=request.gender,
            device_student_id=self.employee_no,
            class_id=request.class_id,
            first_name=request.first_name,
            last_name=request.last_name,
            father_name=request.father_name,
            parent_phone=request.parent_phone,
            face_image_base64=request.face_image_base64,
            target_device_ids=request.target_device_ids,
            idempotency_key=self.idempotency_key,
        )
        if is_numeric_employee_no(record.device_student_id):
            self.employee_no = record.device_student_id
        else:
            logger.warning(
                "backend device student id is not numeric; keeping local employee number",
                device_student_id=record.device_student_id,
            )
        self.provisioning_id = record.provisioning_id
        for link in record.target_devices:
            if link.device_id:
                self._backend_device_map[link.device_id] = link.id
        logger.info(
            "backend provisioning started",
            provisioning_id=self.provisioning_id,
            employee_no=self.employee_no,
            target_devices=len(record.target_devices),
        )

    def _backend_device_id(self, target: DeviceTarget) -> str | None:
        if target.backend_id:
            return target.backend_id
        if target.device_id:
            return self._backend_device_map.get(target.device_id)
        return None

    def _select_targets(self) -> list[DeviceTarget]:
        requested = self.request.target_device_ids
        if requested is None:
            return list(self._devices)
        if not requested:
            return []
        wanted = set(requested)
        selected = [
            d for d in self._devices
            if d.id in wanted or self._backend_device_id(d) in wanted
        ]
        if not selected:
            self.abort_causes.append("None of the requested devices are configured locally")
        elif len(selected) < len(wanted):
            logger.warning(
                "some requested devices are not configured locally",
                requested=sorted(wanted),
                selected=[d.id for d in selected],
            )
        return selected

    async def _rollout(self, targets: list[DeviceTarget]) -> None:
        if not targets:
            return
        valid_from, valid_to = validity_window(datetime.now(), self._settings.validity_years)
        semaphore = asyncio.Semaphore(min(self._settings.rollout_max_concurrency, len(targets)))

        async def guarded(target: DeviceTarget) -> DeviceOutcome:
            async with semaphore:
                return await self._provision_device(target, valid_from, valid_to)

        results = await asyncio.gather(*(guarded(t) for t in targets), return_exceptions=True)
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "device rollout crashed",
                    device_id=target.id,
                    exc_info=(type(result), result, result.__traceback__),
                )
                self.abort_causes.append(f"{target.label}: unexpected error: {result}")

    async def _provision_device(self, target: DeviceTarget, valid_from: str, valid_to: str) -> DeviceOutcome:
        client = self._clients[target.id]
        log = logger.bind(device_id=target.id, host=target.host)

        try:
            connection = await client.test_connection()
        except TransportError as exc:
            connection = ActionResult.failure("ConnectionFailed", str(exc))
        if connection.ok:
            target = self._note_discovered_identity(target, client.last_device_info)

        outcome = DeviceOutcome(
            device_id=target.id,
            device_name=target.name,
            backend_device_id=self._backend_device_id(target),
            connection=connection,
        )

        if connection.ok:
            outcome.user_create = await self._device_step(
                client.create_identity(
                    self.employee_no,
                    self.request.full_name,
                    self.request.gender,
                    valid_from,
                    valid_to,
                ),
                "RequestFailed",
            )
            if outcome.user_create.ok:
                self.successful_devices.append(
                    SuccessfulDeviceEntry(
                        target=target,
                        backend_device_id=outcome.backend_device_id,
                        external_device_id=target.device_id,
                        name=target.name,
                        location=target.location,
                    )
                )
                outcome.face_upload = await self._device_step(
                    client.upload_artifact(
                        self.employee_no,
                        self.request.full_name,
                        self.request.gender,
                        self.request.face_image_base64,
                    ),
                    "UploadFailed",
                )

        self.outcomes[target.id] = outcome
        if outcome.ok:
            log.info("device provisioned", employee_no=self.employee_no)
        else:
            log.warning("device provisioning failed", error=outcome.error_summary())
        await self._report_forward(target, outcome)
        return outcome

    @staticmethod
    async def _device_step(call, failure_status: str) -> ActionResult:
        try:
            return await call
        except InvalidImageError as exc:
            return ActionResult.failure("InvalidImage", str(exc))
        except TransportError as exc:
            return ActionResult.failure(failure_status, str(exc))

    def _note_discovered_identity(self, target: DeviceTarget, info: DeviceInfo | None) -> DeviceTarget:
        if info is None or not info.device_id or target.device_id == info.device_id:
            return target
        updated = target.model_copy(update={"device_id": info.device_id})
        backend_id = self._backend_device_id(updated)
        if backend_id and not updated.backend_id:
            updated = updated.model_copy(update={"backend_id": backend_id})
        self._updated_devices[target.id] = updated
        return updated

    async def _report_forward(self, target: DeviceTarget, outcome: DeviceOutcome) -> None:
        if self._backend is None or self.provisioning_id is None:
            return
        try:
            await self._backend.report_device_result(
                self.provisioning_id,
                backend_device_id=outcome.backend_device_id,
                external_device_id=target.device_id,
                device_name=target.name,
                device_location=target.location,
                status=DeviceLinkStatus.OK if outcome.ok else DeviceLinkStatus.FAILED,
                employee_no=self.employee_no,
                error_message=outcome.error_summary(),
            )
        except BackendError as exc:
            logger.error("device result report failed", device_id=target.id, error=str(exc))
            self.abort_causes.append(f"Backend report failed for {target.label}: {exc}")

    async def _abort(self) -> None:
        """Compensate and raise :class:`SagaAbortedError`. Never returns."""
        self._transition(SagaState.ROLLBACK_DEVICES)
        cause = "; ".join(self.abort_causes)
        rollback_reason = f"Rolled back due to failure: {cause}"
        logger.warning(
            "saga aborted; rolling back",
            cause=cause,
            devices=[e.target.id for e in self.successful_devices],
        )

        entries = list(self.successful_devices)
        results = await asyncio.gather(
            *(self._compensate(entry, rollback_reason) for entry in entries),
            return_exceptions=True,
        )
        for entry, result in zip(entries, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self.rollback_errors.append(f"{entry.target.label}: {result}")
            elif result is not None:
                self.rollback_errors.append(result)

        self._transition(SagaState.ROLLBACK_FINALIZE)
        if self._backend is not None and self.provisioning_id is not None:
            finalize_reason = rollback_reason
            if self.rollback_errors:
                finalize_reason = f"{rollback_reason}. Rollback errors: {'; '.join(self.rollback_errors)}"
            try:
                await self._backend.finalize_provisioning_failure(self.provisioning_id, finalize_reason)
            except BackendError as exc:
                logger.error("finalize failure call failed", error=str(exc))
                self.finalize_error = str(exc)

        self._transition(SagaState.FAILED)
        raise SagaAbortedError(
            cause,
            rollback_errors=self.rollback_errors,
            finalize_error=self.finalize_error,
        )

    async def _compensate(self, entry: SuccessfulDeviceEntry, rollback_reason: str) -> str | None:
        client = self._clients[entry.target.id]
        error: str | None = None
        try:
            result = await client.delete_identity(self.employee_no)
            if not result.ok:
                error = result.error_message or result.status_string or "Delete failed"
        except RegistratorError as exc:
            error = str(exc)

        if self._backend is not None and self.provisioning_id is not None:
            status_error = rollback_reason
            if error is not None:
                status_error = f"{rollback_reason}. Rollback delete failed: {error}"
            try:
                await self._backend.report_device_result(
                    self.provisioning_id,
                    backend_device_id=entry.backend_device_id,
                    external_device_id=entry.external_device_id,
                    device_name=entry.name,
                    device_location=entry.location,
                    status=DeviceLinkStatus.FAILED,
                    employee_no=self.employee_no,
                    error_message=status_error,
                )
            except BackendError as exc:
                logger.warning("rollback report failed", device_id=entry.target.id, error=str(exc))

        if error is None:
            logger.info("device rolled back", device_id=entry.target.id, employee_no=self.employee_no)
            return None
        logger.error("device rollback failed", device_id=entry.target.id, error=error)
        return f"{entry.target.label}: {error}"

    def _persist_registry_changes(self) -> None:
        if not self._updated_devices:
            return
        devices = [self._updated_devices.get(d.id, d) for d in self._devices]
        try:
            self._registry.replace_all(devices)
        except RegistryError as exc:
            logger.warning("device registry update failed", error=str(exc))


class ProvisioningOrchestrator:
    """Entry point for the UI bridge: registrations and per-device maintenance."""

    def __init__(
        self,
        registry: DeviceRegistry,
        *,
        settings: Settings | None = None,
        device_client_factory: DeviceClientFactory | None = None,
        backend_client_factory: BackendClientFactory | None = None,
    ):
        self._registry = registry
        self._settings = settings or get_settings()
        self._device_client_factory = device_client_factory or self._default_device_client
        self._backend_client_factory = backend_client_factory or self._default_backend_client

    def _default_device_client(self, target: DeviceTarget) -> DeviceApiClient:
        return DeviceApiClient(
            target,
            timeout_s=self._settings.device_request_timeout_seconds,
            face_library_type=self._settings.face_library_type,
            face_library_id=self._settings.face_library_id,
        )

    def _default_backend_client(self, base_url: str, token: str | None) -> BackendApiClient:
        return BackendApiClient(
            base_url=base_url,
            token=token,
            timeout_s=self._settings.backend_request_timeout_seconds,
        )

    def create_saga(self, request: EnrollmentRequest) -> ProvisioningSaga:
        return ProvisioningSaga(
            request,
            registry=self._registry,
            settings=self._settings,
            device_client_factory=self._device_client_factory,
            backend_client_factory=self._backend_client_factory,
        )

    async def register_student(self, request: EnrollmentRequest) -> RegisterResult:
        return await self.create_saga(request).run()

    def _require_device(self, device_id: str) -> DeviceTarget:
        device = self._registry.find_device_by_id(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device not found: {device_id}")
        return device

    async def test_device_connection(self, device_id: str) -> bool:
        target = self._require_device(device_id)
        async with self._device_client_factory(target) as client:
            try:
                result = await client.test_connection()
            except TransportError as exc:
                logger.info("device unreachable", device_id=device_id, error=str(exc))
                return False
        return result.ok

    async def search_identities(
        self, device_id: str, offset: int = 0, limit: int = 30
    ) -> UserInfoSearchResponse:
        target = self._require_device(device_id)
        async with self._device_client_factory(target) as client:
            return await client.search_identities(offset, limit)

    async def delete_identity(self, device_id: str, employee_no: str) -> ActionResult:
        target = self._require_device(device_id)
        async with self._device_client_factory(target) as client:
            result = await client.delete_identity(employee_no)
        if not result.ok:
            raise DeviceProtocolError(result.error_message or "Delete failed")
        return result

    async def recreate_identity(
        self,
        device_id: str,
        employee_no: str,
        name: str,
        gender: str,
        *,
        new_employee_no: bool = False,
        reuse_existing_face: bool = False,
        face_image_base64: str | None = None,
    ) -> RecreateResult:
        """Delete and re-create a user on one device, optionally reusing its stored face."""
        target = self._require_device(device_id)
        if (
            face_image_base64 is not None
            and len(face_image_base64) > self._settings.max_face_image_base64_length
        ):
            raise ValidationError(
                f"Face image is too large. Max {self._settings.max_face_image_bytes // 1024} KB."
            )

        async with self._device_client_factory(target) as client:
            connection = await client.test_connection()
            if not connection.ok:
                raise DeviceProtocolError(connection.describe())

            if reuse_existing_face and face_image_base64 is None:
                existing = await client.search_identity(employee_no)
                if existing is None:
                    raise DeviceProtocolError("User not found on device")
                if not existing.face_url:
                    raise DeviceProtocolError("Existing user has no face to reuse")
                face_bytes = await client.fetch_artifact(existing.face_url)
                face_data = base64.b64encode(face_bytes).decode("ascii")
            elif face_image_base64 is not None:
                face_data = face_image_base64
            else:
                raise ValidationError("Face image is required")
            # Fail before the destructive delete if the image is unusable.
            decode_face_image(face_data)

            next_employee_no = (
                generate_employee_no(self._settings.employee_no_length)
                if new_employee_no
                else employee_no
            )

            delete_result = await client.delete_identity(employee_no)
            if not delete_result.ok:
                raise DeviceProtocolError(f"Delete failed: {delete_result.error_message or ''}")

            valid_from, valid_to = validity_window(datetime.now(), self._settings.validity_years)
            create_result = await client.create_identity(
                next_employee_no, name, gender, valid_from, valid_to
            )
            if not create_result.ok:
                raise DeviceProtocolError(f"Create failed: {create_result.error_message or ''}")

            face_upload = await client.upload_artifact(next_employee_no, name, gender, face_data)

        logger.info(
            "device user recreated",
            device_id=device_id,
            employee_no=next_employee_no,
            face_ok=face_upload.ok,
        )
        return RecreateResult(
            employee_no=next_employee_no,
            delete_result=delete_result,
            create_result=create_result,
            face_upload=face_upload,
        )
