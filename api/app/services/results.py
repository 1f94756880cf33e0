from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class CertificateError(str, Enum):
    """Expected failure outcomes returned by the certificate data layer."""

    NOT_FOUND = "certificate not found"
    INVALID_STATUS = "invalid certificate status"
    INVALID_CERTIFICATE_TYPE = "invalid certificate type"
    INVALID_PRIORITY = "invalid certificate priority"
    INVALID_INPUT = "invalid certificate data"
    INVALID_TAG = "invalid certificate tag"
    ACCESS_DENIED = "access to this certificate is denied"
    CANNOT_BE_EDITED = "certificate cannot be edited in its current status"
    BULK_UPDATE_EMPTY = "no certificates selected for bulk update"
    BULK_UPDATE_LIMIT_EXCEEDED = "too many certificates selected for bulk update"
    BULK_UPDATE_BLOCKED = "some selected certificates cannot be edited"
    DATABASE_ERROR = "database request failed"
    UNEXPECTED_ERROR = "unexpected error while processing certificate"


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Tagged outcome: either ``value`` (ok) or ``error`` (failure)."""

    value: T | None = None
    error: CertificateError | None = None
    details: Any = None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: CertificateError, details: Any = None) -> Result[T]:
        return cls(error=error, details=details)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise ValueError(f"cannot unwrap failed result: {self.error.name}")
        return self.value  # type: ignore[return-value]
