"""ISAPI client for a single access-control terminal."""
from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Any, Union

import structlog
from aiohttp import ClientSession, ClientTimeout, FormData
from pydantic import ValidationError as PydanticValidationError

from student_registrator.clients.digest import DeviceResponse, DigestAuthClient
from student_registrator.core.exceptions import DeviceProtocolError, InvalidImageError
from student_registrator.domain.dto import DeviceInfo, UserInfoEntry, UserInfoSearchResponse
from student_registrator.domain.models import ActionResult, DeviceTarget

logger = structlog.get_logger(__name__)

DEVICE_INFO_PATH = "/ISAPI/System/deviceInfo?format=json"
USER_RECORD_PATH = "/ISAPI/AccessControl/UserInfo/Record?format=json"
USER_SEARCH_PATH = "/ISAPI/AccessControl/UserInfo/Search?format=json"
USER_DELETE_PATH = "/ISAPI/AccessControl/UserInfo/Delete?format=json"
FACE_RECORD_PATH = "/ISAPI/Intelligent/FDLib/FaceDataRecord?format=json"

# ISAPI success sentinel; older firmware sets only statusString.
STATUS_OK = 1


@dataclass(frozen=True)
class ParsedResponse:
    result: ActionResult


@dataclass(frozen=True)
class UnparsedResponse:
    raw_body: str

    def to_action_result(self) -> ActionResult:
        return ActionResult.failure("ParseError", self.raw_body)


DeviceReply = Union[ParsedResponse, UnparsedResponse]


def parse_action_response(text: str) -> DeviceReply:
    try:
        data = json.loads(text)
    except ValueError:
        return UnparsedResponse(raw_body=text)
    if not isinstance(data, dict):
        return UnparsedResponse(raw_body=text)

    status_code = data.get("statusCode")
    if not isinstance(status_code, int) or isinstance(status_code, bool):
        status_code = None
    status_string = data.get("statusString")
    if not isinstance(status_string, str):
        status_string = None
    error_message = data.get("errorMsg")
    if not isinstance(error_message, str):
        error_message = None

    ok = status_code == STATUS_OK or status_string == "OK"
    return ParsedResponse(
        ActionResult(
            ok=ok,
            status_code=status_code,
            status_string=status_string,
            error_message=error_message,
        )
    )


def to_action_result(reply: DeviceReply) -> ActionResult:
    if isinstance(reply, ParsedResponse):
        return reply.result
    return reply.to_action_result()


def decode_face_image(face_image_base64: str) -> bytes:
    """Decode a base64 face image, tolerating a ``data:`` URL prefix."""
    payload = face_image_base64.strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        image = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImageError(f"Face image is not valid base64: {exc}") from exc
    if not image:
        raise InvalidImageError("Face image is empty")
    return image


class DeviceApiClient:
    """Device-facing operations for one :class:`DeviceTarget`.

    Owns its HTTP session; use as ``async with DeviceApiClient(target) as client``.
    The session is scoped to one saga run and reused by every call against the device.
    """

    def __init__(
        self,
        target: DeviceTarget,
        *,
        timeout_s: float = 10.0,
        face_library_type: str = "blackFD",
        face_library_id: str = "1",
    ):
        self.target = target
        self._timeout_s = timeout_s
        self._face_library_type = face_library_type
        self._face_library_id = face_library_id
        self._session: ClientSession | None = None
        self._auth: DigestAuthClient | None = None
        self.last_device_info: DeviceInfo | None = None

    async def __aenter__(self) -> "DeviceApiClient":
        self._session = ClientSession(timeout=ClientTimeout(total=self._timeout_s))
        self._auth = DigestAuthClient(
            self._session,
            username=self.target.username,
            password=self.target.password,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None
            self._auth = None

    def _url(self, path: str) -> str:
        return f"{self.target.base_url}{path}"

    def _client(self) -> DigestAuthClient:
        if self._auth is None:
            raise RuntimeError("Client is not started; use 'async with DeviceApiClient(...)'.")
        return self._auth

    async def test_connection(self) -> ActionResult:
        """Connectivity and credential check; raises on transport/auth failures."""
        response = await self._client().request("GET", self._url(DEVICE_INFO_PATH))
        if not response.ok:
            return ActionResult(
                ok=False,
                status_code=response.status,
                status_string="ConnectionFailed",
                error_message=f"HTTP {response.status}: {response.text()[:500]}",
            )
        try:
            payload = response.json()
        except ValueError:
            return ActionResult.failure("ParseError", response.text())
        if isinstance(payload, dict):
            info = payload.get("DeviceInfo", payload)
            try:
                self.last_device_info = DeviceInfo.model_validate(info)
            except PydanticValidationError:
                self.last_device_info = None
        return ActionResult(ok=True, status_code=response.status, status_string="OK")

    async def create_identity(
        self,
        employee_no: str,
        name: str,
        gender: str,
        valid_from: str,
        valid_to: str,
    ) -> ActionResult:
        payload = {
            "UserInfo": {
                "employeeNo": employee_no,
                "name": name,
                "userType": "normal",
                "doorRight": "1",
                "RightPlan": [{"doorNo": 1, "planTemplateNo": "1"}],
                "Valid": {
                    "enable": True,
                    "beginTime": valid_from,
                    "endTime": valid_to,
                    "timeType": "local",
                },
                "gender": gender,
                "localUIRight": False,
                "maxOpenDoorTime": 0,
                "userVerifyMode": "",
            }
        }
        response = await self._client().request("POST", self._url(USER_RECORD_PATH), json=payload)
        return to_action_result(parse_action_response(response.text()))

    async def upload_artifact(
        self,
        employee_no: str,
        name: str,
        gender: str,
        face_image_base64: str,
    ) -> ActionResult:
        image = decode_face_image(face_image_base64)
        face_record = {
            "faceLibType": self._face_library_type,
            "FDID": self._face_library_id,
            "FPID": employee_no,
            "name": name,
            "gender": gender,
        }
        form = FormData()
        form.add_field(
            "FaceDataRecord",
            json.dumps(face_record),
            content_type="application/json",
        )
        form.add_field(
            "FaceImage",
            image,
            filename="face.jpg",
            content_type="image/jpeg",
        )
        # Basic auth fallback: the multipart body can be sent only once, so the
        # two-phase digest handshake is not possible for this call.
        response = await self._client().basic_request("POST", self._url(FACE_RECORD_PATH), data=form)
        return to_action_result(parse_action_response(response.text()))

    async def search_identities(self, offset: int = 0, limit: int = 30) -> UserInfoSearchResponse:
        condition: dict[str, Any] = {
            "searchID": f"search-{int(time.time())}",
            "maxResults": limit,
            "searchResultPosition": offset,
        }
        return await self._search(condition)

    async def search_identity(self, employee_no: str) -> UserInfoEntry | None:
        condition: dict[str, Any] = {
            "searchID": f"search-{int(time.time())}",
            "maxResults": 1,
            "searchResultPosition": 0,
            "EmployeeNoList": [{"employeeNo": employee_no}],
        }
        result = await self._search(condition)
        return next(iter(result.users), None)

    async def _search(self, condition: dict[str, Any]) -> UserInfoSearchResponse:
        response = await self._client().request(
            "POST",
            self._url(USER_SEARCH_PATH),
            json={"UserInfoSearchCond": condition},
        )
        text = response.text()
        if not response.ok:
            raise DeviceProtocolError(f"User search failed: HTTP {response.status}", raw_body=text)
        try:
            return UserInfoSearchResponse.model_validate_json(text)
        except PydanticValidationError as exc:
            raise DeviceProtocolError(f"Unparseable user search response: {exc}", raw_body=text) from exc

    async def delete_identity(self, employee_no: str) -> ActionResult:
        payload = {"UserInfoDelCond": {"EmployeeNoList": [{"employeeNo": employee_no}]}}
        response = await self._client().request("PUT", self._url(USER_DELETE_PATH), json=payload)
        result = to_action_result(parse_action_response(response.text()))
        if not result.ok:
            logger.info(
                "device delete not confirmed",
                device_id=self.target.id,
                employee_no=employee_no,
                status_string=result.status_string,
            )
        return result

    async def fetch_artifact(self, url: str) -> bytes:
        """Download a stored face image (``faceURL`` from a user search)."""
        if url.startswith("http://") or url.startswith("https://"):
            full_url = url
        else:
            full_url = f"{self.target.base_url}/{url.lstrip('/')}"
        response: DeviceResponse = await self._client().request("GET", full_url)
        if not response.ok:
            raise DeviceProtocolError(
                f"Failed to fetch face image: HTTP {response.status}",
                raw_body=response.text()[:2000],
            )
        return response.body
