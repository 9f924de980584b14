"""Common exceptions for client, registry and saga layers."""
from __future__ import annotations

from typing import Sequence


class RegistratorError(Exception):
    """Base error for the registrator."""


class ValidationError(RegistratorError):
    """Raised when a request is rejected before any network call."""


class InvalidImageError(ValidationError):
    """Raised when the face image cannot be decoded."""


class TransportError(RegistratorError):
    """Raised when a device cannot be reached or authenticated against."""

    def __init__(self, host: str, message: str):
        super().__init__(f"{host}: {message}")
        self.host = host


class NetworkError(TransportError):
    """Raised on connection failures and timeouts."""


class AuthChallengeMissingError(TransportError):
    """Raised when a device answers 401 without a WWW-Authenticate challenge."""


class AuthChallengeParseError(TransportError):
    """Raised when the WWW-Authenticate challenge cannot be parsed."""


class DeviceProtocolError(RegistratorError):
    """Raised when a device response is unparseable or reports failure."""

    def __init__(self, message: str, raw_body: str | None = None):
        super().__init__(message)
        self.raw_body = raw_body


class BackendError(RegistratorError):
    """Raised when a backend call fails."""

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status = status
        self.body = body


class DeviceNotFoundError(RegistratorError):
    """Raised when the registry has no device with the requested id."""


class RegistryError(RegistratorError):
    """Raised when the device registry rejects a change."""


class InvalidSagaTransitionError(RegistratorError):
    """Raised when a saga attempts an unsupported state change."""


class SagaAbortedError(RegistratorError):
    """Raised when a provisioning saga aborted and was compensated.

    The message carries every contributing cause: the original abort reason,
    per-device rollback errors and the finalize error, in that order.
    """

    def __init__(
        self,
        cause: str,
        *,
        rollback_errors: Sequence[str] = (),
        finalize_error: str | None = None,
    ):
        self.cause = cause
        self.rollback_errors = list(rollback_errors)
        self.finalize_error = finalize_error
        super().__init__(self._compose())

    def _compose(self) -> str:
        message = self.cause
        if self.rollback_errors:
            message = f"{message}. Rollback errors: {'; '.join(self.rollback_errors)}"
        if self.finalize_error is not None:
            message = f"{message}. Finalize failed: {self.finalize_error}"
        return message
