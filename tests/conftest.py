"""Shared fixtures: fake ISAPI terminals and a fake school backend on aiohttp test servers."""
from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

import pytest
from aiohttp import web

from student_registrator.domain.models import DeviceTarget
from student_registrator.services.registry import InMemoryDeviceRegistry
from student_registrator.settings import Settings

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00\x10JFIF" + b"\x00" * 64 + b"\xff\xd9"
FACE_B64 = base64.b64encode(JPEG_BYTES).decode("ascii")

_AUTH_PARAM_RE = re.compile(r'(\w+)=(?:"([^"]*)"|([^\s,]+))')


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


@dataclass
class ConcurrencyGauge:
    """Counts handlers running at once across several fake terminals."""

    current: int = 0
    peak: int = 0

    def enter(self) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)

    def exit(self) -> None:
        self.current -= 1


@dataclass
class FakeDevice:
    """In-process ISAPI terminal. Every behaviour knob is a plain attribute."""

    name: str
    username: str = "admin"
    password: str = "secret123"
    realm: str = "DS-K1T341"
    nonce: str = field(default_factory=lambda: uuid.uuid4().hex)
    device_serial: str = field(default_factory=lambda: f"DS{uuid.uuid4().hex[:10].upper()}")
    # "digest" | "none" | "missing" | "malformed" | "basic"
    challenge: str = "digest"
    create_mode: str = "ok"  # "ok" | "fail" | "garbage"
    upload_mode: str = "ok"  # "ok" | "fail"
    delete_mode: str = "ok"  # "ok" | "fail" | "hang" | "drop"
    create_delay: float = 0.0
    hang_seconds: float = 3.0
    gauge: ConcurrencyGauge | None = None
    status_string_only: bool = False
    users: dict[str, dict[str, Any]] = field(default_factory=dict)
    requests: list[tuple[str, str]] = field(default_factory=list)
    delete_calls: list[str] = field(default_factory=list)
    auth_failures: int = 0

    # -- auth ---------------------------------------------------------------

    def _unauthorized(self) -> web.Response:
        headers = {}
        if self.challenge == "digest":
            headers["WWW-Authenticate"] = (
                f'Digest qop="auth", realm="{self.realm}", nonce="{self.nonce}", stale="FALSE"'
            )
        elif self.challenge == "malformed":
            headers["WWW-Authenticate"] = "Digest qop=auth, stale=FALSE"
        elif self.challenge == "basic":
            headers["WWW-Authenticate"] = f'Basic realm="{self.realm}"'
        return web.Response(status=401, headers=headers, text="Unauthorized")

    def _digest_ok(self, request: web.Request, header: str) -> bool:
        params = {k: q or b for k, q, b in _AUTH_PARAM_RE.findall(header[len("Digest "):])}
        if params.get("username") != self.username or params.get("nonce") != self.nonce:
            return False
        if params.get("uri") != request.path_qs:
            return False
        ha1 = _md5(f"{self.username}:{self.realm}:{self.password}")
        ha2 = _md5(f"{request.method}:{params['uri']}")
        expected = _md5(
            f"{ha1}:{self.nonce}:{params.get('nc')}:{params.get('cnonce')}:{params.get('qop')}:{ha2}"
        )
        return params.get("response") == expected

    def _basic_ok(self, header: str) -> bool:
        decoded = base64.b64decode(header[len("Basic "):]).decode("utf-8")
        return decoded == f"{self.username}:{self.password}"

    @web.middleware
    async def middleware(self, request: web.Request, handler):
        self.requests.append((request.method, request.path))
        if self.challenge == "none":
            return await handler(request)
        header = request.headers.get("Authorization", "")
        if header.startswith("Digest ") and self._digest_ok(request, header):
            return await handler(request)
        if header.startswith("Basic ") and self._basic_ok(header):
            return await handler(request)
        if header:
            self.auth_failures += 1
        return self._unauthorized()

    # -- handlers -----------------------------------------------------------

    def _ok(self) -> web.Response:
        if self.status_string_only:
            return web.json_response({"statusString": "OK", "subStatusCode": "ok"})
        return web.json_response({"statusCode": 1, "statusString": "OK", "subStatusCode": "ok"})

    async def device_info(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "DeviceInfo": {
                    "deviceName": self.name,
                    "deviceID": self.device_serial,
                    "model": "DS-K1T341AM",
                    "serialNumber": self.device_serial,
                }
            }
        )

    async def create_user(self, request: web.Request) -> web.Response:
        if self.create_delay:
            await self._slow_down(self.create_delay)
        if self.create_mode == "garbage":
            return web.Response(status=500, text="<html>internal error</html>")
        body = await request.json()
        info = body["UserInfo"]
        if self.create_mode == "fail":
            return web.json_response(
                {"statusCode": 6, "statusString": "Invalid Content", "errorMsg": "employeeNo"},
                status=400,
            )
        self.users[info["employeeNo"]] = {"info": info, "face": None}
        return self._ok()

    async def upload_face(self, request: web.Request) -> web.Response:
        form = await request.post()
        record = json.loads(form["FaceDataRecord"])
        if self.upload_mode == "fail":
            return web.json_response(
                {"statusCode": 4, "statusString": "Invalid Operation", "errorMsg": "face quality"}
            )
        image = form["FaceImage"]
        user = self.users.get(record["FPID"])
        if user is None:
            return web.json_response(
                {"statusCode": 4, "statusString": "Invalid Operation", "errorMsg": "no such user"}
            )
        user["face"] = image.file.read()
        return self._ok()

    async def search_users(self, request: web.Request) -> web.Response:
        cond = (await request.json())["UserInfoSearchCond"]
        wanted = {e["employeeNo"] for e in cond.get("EmployeeNoList", [])}
        matches = [
            {
                "employeeNo": no,
                "name": user["info"]["name"],
                "gender": user["info"]["gender"],
                "numOfFace": 1 if user["face"] else 0,
                **({"faceURL": f"/face/{no}.jpg"} if user["face"] else {}),
            }
            for no, user in self.users.items()
            if not wanted or no in wanted
        ]
        start = cond.get("searchResultPosition", 0)
        page = matches[start:start + cond.get("maxResults", 30)]
        return web.json_response(
            {
                "UserInfoSearch": {
                    "searchID": cond.get("searchID"),
                    "responseStatusStrg": "OK",
                    "numOfMatches": len(page),
                    "totalMatches": len(matches),
                    **({"UserInfo": page} if page else {}),
                }
            }
        )

    async def delete_user(self, request: web.Request) -> web.Response:
        body = await request.json()
        employee_nos = [e["employeeNo"] for e in body["UserInfoDelCond"]["EmployeeNoList"]]
        self.delete_calls.extend(employee_nos)
        if self.delete_mode == "hang":
            await asyncio.sleep(self.hang_seconds)
            return self._ok()
        if self.delete_mode == "drop":
            request.transport.close()
            return self._ok()
        if self.delete_mode == "fail":
            return web.json_response(
                {"statusCode": 4, "statusString": "Device Busy", "errorMsg": "device busy"}
            )
        for no in employee_nos:
            self.users.pop(no, None)
        return self._ok()

    async def _slow_down(self, seconds: float) -> None:
        if self.gauge is not None:
            self.gauge.enter()
        try:
            await asyncio.sleep(seconds)
        finally:
            if self.gauge is not None:
                self.gauge.exit()

    async def face_image(self, request: web.Request) -> web.Response:
        user = self.users.get(request.match_info["employee_no"])
        if user is None or user["face"] is None:
            return web.Response(status=404)
        return web.Response(body=user["face"], content_type="image/jpeg")

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self.middleware])
        app.router.add_get("/ISAPI/System/deviceInfo", self.device_info)
        app.router.add_post("/ISAPI/AccessControl/UserInfo/Record", self.create_user)
        app.router.add_post("/ISAPI/Intelligent/FDLib/FaceDataRecord", self.upload_face)
        app.router.add_post("/ISAPI/AccessControl/UserInfo/Search", self.search_users)
        app.router.add_put("/ISAPI/AccessControl/UserInfo/Delete", self.delete_user)
        app.router.add_get("/face/{employee_no}.jpg", self.face_image)
        return app

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p == path)


@dataclass
class FakeBackend:
    """School backend that deduplicates provisioning starts by idempotency key."""

    token: str | None = "backend-token"
    device_student_id: str | None = None
    fail_start: bool = False
    fail_finalize: bool = False
    fail_reports_for: set[str] = field(default_factory=set)
    target_devices: list[dict[str, Any]] = field(default_factory=list)
    records: dict[str, dict[str, Any]] = field(default_factory=dict)
    keys: dict[str, str] = field(default_factory=dict)
    start_calls: list[dict[str, Any]] = field(default_factory=list)
    reports: list[dict[str, Any]] = field(default_factory=list)
    finalize_calls: list[dict[str, Any]] = field(default_factory=list)
    auth_headers: list[str | None] = field(default_factory=list)
    url: str = ""

    async def start(self, request: web.Request) -> web.Response:
        self.auth_headers.append(request.headers.get("Authorization"))
        body = await request.json()
        self.start_calls.append({"body": body, "key": request.headers.get("Idempotency-Key")})
        if self.fail_start:
            return web.json_response({"error": "school not found"}, status=404)
        key = request.headers["Idempotency-Key"]
        if key in self.keys:
            return web.json_response(self.records[self.keys[key]])
        provisioning_id = str(uuid.uuid4())
        record = {
            "provisioningId": provisioning_id,
            "status": "IN_PROGRESS",
            "deviceStudentId": self.device_student_id or body.get("deviceStudentId"),
            "studentId": str(uuid.uuid4()),
            "targetDevices": [dict(d, status="PENDING") for d in self.target_devices],
        }
        self.records[provisioning_id] = record
        self.keys[key] = provisioning_id
        return web.json_response(record, status=201)

    async def device_result(self, request: web.Request) -> web.Response:
        body = await request.json()
        body["provisioningId"] = request.match_info["pid"]
        self.reports.append(body)
        if body.get("deviceName") in self.fail_reports_for:
            return web.json_response({"error": "db unavailable"}, status=503)
        return web.json_response({"ok": True})

    async def finalize(self, request: web.Request) -> web.Response:
        body = await request.json()
        body["provisioningId"] = request.match_info["pid"]
        self.finalize_calls.append(body)
        if self.fail_finalize:
            return web.json_response({"error": "finalize exploded"}, status=502)
        record = self.records.get(request.match_info["pid"])
        if record is not None:
            record["status"] = body["status"]
        return web.json_response({"ok": True})

    async def get(self, request: web.Request) -> web.Response:
        record = self.records.get(request.match_info["pid"])
        if record is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(record)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/students/provision", self.start)
        app.router.add_post("/api/provisioning/{pid}/device-result", self.device_result)
        app.router.add_post("/api/provisioning/{pid}/finalize", self.finalize)
        app.router.add_get("/api/provisioning/{pid}", self.get)
        return app

    def reports_for(self, device_name: str) -> list[dict[str, Any]]:
        return [r for r in self.reports if r.get("deviceName") == device_name]


@dataclass
class RunningDevice:
    fake: FakeDevice
    target: DeviceTarget


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        backend_url=None,
        backend_token=None,
        device_request_timeout_seconds=5.0,
        backend_request_timeout_seconds=5.0,
        max_face_image_bytes=4096,
    )


@pytest.fixture
def make_device(aiohttp_server):
    """Factory: start a fake terminal and return it with a matching DeviceTarget."""

    async def _make(name: str = "Gate", *, device_id: str | None = None, **behaviour) -> RunningDevice:
        fake = FakeDevice(name=name, **behaviour)
        server = await aiohttp_server(fake.create_app())
        target = DeviceTarget(
            id=device_id or f"local-{name.lower().replace(' ', '-')}",
            name=name,
            host=server.host,
            port=server.port,
            username=fake.username,
            password=fake.password,
            location=f"{name} entrance",
        )
        return RunningDevice(fake=fake, target=target)

    return _make


@pytest.fixture
async def backend(aiohttp_server):
    fake = FakeBackend()
    server = await aiohttp_server(fake.create_app())
    fake.url = f"http://{server.host}:{server.port}"
    return fake


@pytest.fixture
def registry_of():
    def _make(*devices: RunningDevice) -> InMemoryDeviceRegistry:
        return InMemoryDeviceRegistry([d.target for d in devices])

    return _make
