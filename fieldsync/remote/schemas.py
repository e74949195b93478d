from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Remote API document. Wire keys are camelCase; attributes are snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def _coerce_identifier(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    return value


Identifier = Annotated[str, BeforeValidator(_coerce_identifier)]


class RemoteCustomer(WireModel):
    id: Identifier
    name: str
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None


class RemoteLocation(WireModel):
    id: Identifier
    name: str
    address: str | None = None
    city: str | None = None
    phone: str | None = None


class RemoteContact(WireModel):
    id: Identifier
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    title: str | None = None


class RemoteTechnician(WireModel):
    id: Identifier
    name: str | None = None


class RemotePhoto(WireModel):
    id: Identifier
    url: str
    caption: str | None = None
    original_name: str | None = None
    created_at: datetime | None = None
    is_primary: bool = False


UNKNOWN_CUSTOMER = RemoteCustomer(id="unknown", name="Unknown Customer")


class RemoteJob(WireModel):
    id: Identifier
    job_number: str = ""
    description: str | None = None
    status: str = "unknown"
    service_type: str | None = None
    due_date: date | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    notes: str | None = None
    actual_hours: float | None = None
    estimated_hours: float | None = None
    battery_type: str | None = None
    battery_model: str | None = None
    battery_serial: str | None = None
    equipment_type: str | None = None
    equipment_model: str | None = None
    equipment_serial: str | None = None
    assigned_to_id: Identifier | None = None
    customer: RemoteCustomer = Field(default_factory=lambda: UNKNOWN_CUSTOMER.model_copy())
    location: RemoteLocation | None = None
    contact: RemoteContact | None = None
    assigned_to: RemoteTechnician | None = None
    photos: list[RemotePhoto] = Field(default_factory=list)

    @field_validator("job_number", mode="before")
    @classmethod
    def _normalize_job_number(cls, value: Any) -> Any:
        if value is None:
            return ""
        return _coerce_identifier(value)

    @field_validator("customer", mode="before")
    @classmethod
    def _default_customer(cls, value: Any) -> Any:
        if value is None:
            return UNKNOWN_CUSTOMER.model_copy()
        return value

    @field_validator("photos", mode="before")
    @classmethod
    def _default_photos(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("due_date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        # The API sends due dates as full ISO timestamps at midnight.
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and len(value) > 10 and value[4:5] == "-" and value[10:11] in {"T", " "}:
            return value[:10]
        return value

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RemoteJobList(WireModel):
    jobs: list[RemoteJob] = Field(default_factory=list)
    total: int | None = None

