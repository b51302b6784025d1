"""Lock record schemas for the two-phase session process lock."""

from __future__ import annotations

from datetime import timedelta
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationInfo, field_validator

RESERVATION_TTL = timedelta(minutes=5)
RUNNING_LOCK_MAX_AGE = timedelta(hours=24)
MAX_CLOCK_SKEW = timedelta(seconds=60)


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


def _check_window(value: int, info: ValidationInfo, max_age: timedelta, label: str) -> int:
    now_ms = (info.context or {}).get("now_ms")
    if now_ms is None:
        return value
    if value <= now_ms - _ms(max_age):
        raise ValueError(f"{label} too old")
    if value > now_ms + _ms(MAX_CLOCK_SKEW):
        raise ValueError(f"{label} in the future")
    return value


class ReservedLock(BaseModel):
    """A stop hook committed that a finalizer will take over this session."""

    session_id: str = Field(..., min_length=1)
    status: Literal["reserved"] = "reserved"
    reserved_at: int = Field(..., description="Epoch milliseconds of the reservation.")

    @field_validator("reserved_at")
    @classmethod
    def _reserved_window(cls, value: int, info: ValidationInfo) -> int:
        return _check_window(value, info, RESERVATION_TTL, "Reservation")


class RunningLock(BaseModel):
    """A finalizer process owns this session."""

    session_id: str = Field(..., min_length=1)
    status: Literal["running"] = "running"
    pid: int = Field(..., gt=0, le=2**31 - 1)
    started_at: int = Field(..., description="Epoch milliseconds of the claim.")
    pid_started_at: float | None = Field(
        default=None,
        description="OS start time of ``pid`` in epoch seconds, when it could be read.",
    )

    @field_validator("started_at")
    @classmethod
    def _started_window(cls, value: int, info: ValidationInfo) -> int:
        return _check_window(value, info, RUNNING_LOCK_MAX_AGE, "Start time")


LockRecord = Annotated[Union[ReservedLock, RunningLock], Field(discriminator="status")]

lock_record_adapter: TypeAdapter[ReservedLock | RunningLock] = TypeAdapter(LockRecord)


__all__ = [
    "LockRecord",
    "MAX_CLOCK_SKEW",
    "RESERVATION_TTL",
    "RUNNING_LOCK_MAX_AGE",
    "ReservedLock",
    "RunningLock",
    "lock_record_adapter",
]
