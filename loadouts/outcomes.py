"""Tagged results for remote inventory calls.

Every remote call ends up as exactly one of `Success`, `RemoteError`, `Throttled`
or `ServiceUnavailable`. `classify_envelope` is the only place that looks at raw
platform status codes; retry decisions elsewhere dispatch on the outcome type.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PlatformErrorCode(IntEnum):
    success = 1
    transport_exception = 2
    unhandled_exception = 3
    not_found = 4
    system_disabled = 5
    system_overloaded = 6
    throttle_limit_exceeded = 7
    permission_denied = 99
    destiny_account_not_found = 1601
    destiny_item_not_found = 1623
    destiny_item_unequippable = 1625
    destiny_no_room_in_destination = 1642
    api_invalid_or_expired_key = 2101
    api_key_missing_from_request = 2102
    access_token_required = 2106
    access_token_expired = 2110


AUTH_ERROR_CODES: frozenset[int] = frozenset(
    {
        PlatformErrorCode.permission_denied,
        PlatformErrorCode.api_invalid_or_expired_key,
        PlatformErrorCode.api_key_missing_from_request,
        PlatformErrorCode.access_token_required,
        PlatformErrorCode.access_token_expired,
    }
)


class Envelope(BaseModel):
    """Wrapper every platform response is delivered in."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    response: Any = Field(default=None, alias="Response")
    error_code: int = Field(default=0, alias="ErrorCode")
    throttle_seconds: int = Field(default=0, alias="ThrottleSeconds")
    error_status: str | None = Field(default=None, alias="ErrorStatus")
    message: str | None = Field(default=None, alias="Message")


@dataclass(frozen=True, slots=True)
class Success:
    payload: Any = None


@dataclass(frozen=True, slots=True)
class RemoteError:
    code: int
    message: str


@dataclass(frozen=True, slots=True)
class Throttled:
    retry_after_seconds: int


@dataclass(frozen=True, slots=True)
class ServiceUnavailable:
    message: str


OperationOutcome = Success | RemoteError | Throttled | ServiceUnavailable


def classify_envelope(envelope: Envelope) -> OperationOutcome:
    # Order matters: maintenance wins over throttling, throttling over success.
    if envelope.error_code == PlatformErrorCode.system_disabled:
        return ServiceUnavailable(
            message=envelope.error_status or envelope.message or "Platform is undergoing maintenance"
        )
    if envelope.throttle_seconds > 0:
        return Throttled(retry_after_seconds=envelope.throttle_seconds)
    if envelope.error_code == PlatformErrorCode.success:
        return Success(payload=envelope.response)
    return RemoteError(
        code=envelope.error_code,
        message=envelope.error_status or envelope.message or "Unknown error occurred",
    )


def is_transient(outcome: OperationOutcome) -> bool:
    return isinstance(outcome, Throttled | ServiceUnavailable)


def is_auth_failure(outcome: OperationOutcome) -> bool:
    return isinstance(outcome, RemoteError) and outcome.code in AUTH_ERROR_CODES
