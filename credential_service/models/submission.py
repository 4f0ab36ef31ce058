"""Inbound contracts: case submissions and scanned credential payloads.

These are pydantic models because they validate data that arrives from
outside the core (a citizen's form, a checkpoint scanner).  Once
validated, the data flows into the frozen dataclass domain models.
"""

from __future__ import annotations

import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_FIRST_MODEL_YEAR = 1885


class _Submission(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="forbid",
        frozen=True,
    )


class VehicleSubmission(_Submission):
    vehicle_type: str = Field(min_length=1, max_length=64, alias="vehicleType")
    make: str = Field(min_length=1, max_length=128)
    model: str = Field(min_length=1, max_length=128)
    year: int
    color: str = Field(min_length=1, max_length=64)
    engine_number: str = Field(min_length=1, max_length=64, alias="engineNumber")
    chassis_number: str = Field(min_length=1, max_length=64, alias="chassisNumber")
    fuel_type: str = Field(min_length=1, max_length=32, alias="fuelType")

    @field_validator("year")
    @classmethod
    def _plausible_year(cls, value: int) -> int:
        # Next year's models go on sale before January.
        latest = datetime.datetime.now(datetime.UTC).year + 1
        if not _FIRST_MODEL_YEAR <= value <= latest:
            raise ValueError(f"year must be between {_FIRST_MODEL_YEAR} and {latest}")
        return value

    @field_validator("engine_number", "chassis_number")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class LicenseSubmission(_Submission):
    license_type: str = Field(
        default="LMV", min_length=1, max_length=16, alias="licenseType"
    )

    @field_validator("license_type")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class EmbeddedPayload(BaseModel):
    """What a relying party scans off a credential.

    ``type``, ``number`` and ``sig`` are fixed; everything else is a
    type-specific public field (chassis number, license class) and is
    kept in ``model_extra``.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    type: Literal["VEHICLE", "LICENSE"]
    number: str = Field(min_length=1)
    sig: str | None = None

    def public_fields(self) -> dict[str, str]:
        extra = self.model_extra or {}
        for key, value in extra.items():
            if not isinstance(value, str):
                raise ValueError(f"public field {key!r} must be a string")
        return dict(extra)
