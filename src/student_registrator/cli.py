"""Command-line bridge: register a student or check a device from a shell."""
from __future__ import annotations

import argparse
import asyncio
import base64
import sys
from pathlib import Path

import structlog

from student_registrator.core.exceptions import RegistratorError
from student_registrator.domain.models import EnrollmentRequest
from student_registrator.logging_config import configure_logging
from student_registrator.services.provisioning import ProvisioningOrchestrator
from student_registrator.services.registry import InMemoryDeviceRegistry
from student_registrator.settings import get_settings

logger = structlog.get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision students onto access-control terminals.")
    parser.add_argument(
        "--devices",
        "-d",
        type=Path,
        required=True,
        help="JSON file with the configured devices (array of device objects).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    register = sub.add_parser("register", help="Register a student on every selected device.")
    register.add_argument("--name", required=True)
    register.add_argument("--gender", required=True, choices=["male", "female", "unknown"])
    register.add_argument("--first-name")
    register.add_argument("--last-name")
    register.add_argument("--father-name")
    register.add_argument("--parent-phone")
    register.add_argument("--image", type=Path, required=True, help="Face image (JPEG).")
    register.add_argument("--backend-url", help="Defaults to REGISTRATOR_BACKEND_URL.")
    register.add_argument("--backend-token", help="Defaults to REGISTRATOR_BACKEND_TOKEN.")
    register.add_argument("--school-id")
    register.add_argument("--class-id")
    register.add_argument(
        "--target",
        action="append",
        dest="targets",
        help="Backend device id to provision; repeatable. Omit for all devices.",
    )
    register.add_argument(
        "--backend-only",
        action="store_true",
        help="Create the backend record without touching any device.",
    )

    ping = sub.add_parser("ping", help="Test connectivity and credentials of one device.")
    ping.add_argument("device_id")

    return parser.parse_args(argv)


async def _register(orchestrator: ProvisioningOrchestrator, args: argparse.Namespace) -> int:
    targets = [] if args.backend_only else args.targets
    request = EnrollmentRequest(
        name=args.name,
        gender=args.gender,
        first_name=args.first_name,
        last_name=args.last_name,
        father_name=args.father_name,
        parent_phone=args.parent_phone,
        school_id=args.school_id,
        class_id=args.class_id,
        face_image_base64=base64.b64encode(args.image.read_bytes()).decode("ascii"),
        target_device_ids=targets,
        backend_url=args.backend_url,
        backend_token=args.backend_token,
    )
    result = await orchestrator.register_student(request)
    print(result.model_dump_json(by_alias=True, indent=2))
    return 0 if all(r.ok for r in result.results) else 2


async def _ping(orchestrator: ProvisioningOrchestrator, device_id: str) -> int:
    ok = await orchestrator.test_device_connection(device_id)
    print("ok" if ok else "unreachable")
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging()
    try:
        registry = InMemoryDeviceRegistry.from_json_file(args.devices)
        orchestrator = ProvisioningOrchestrator(registry, settings=get_settings())
        if args.command == "register":
            return asyncio.run(_register(orchestrator, args))
        return asyncio.run(_ping(orchestrator, args.device_id))
    except RegistratorError as exc:
        logger.error("command failed", command=args.command, error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
