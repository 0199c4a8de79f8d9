"""
Service payloads - one variant per service type.

A booking carries exactly one payload whose ``service_type`` tag equals the
booking's own service type. The union is discriminated on that tag, so
``parse_payload`` picks the variant from the data itself and rejects
unknown tags.

Code that reads variant fields goes through ``match`` with
``assert_never`` on the fall-through, so adding a variant without handling
it fails type checking instead of reading a field that is not there.
"""

from __future__ import annotations

from datetime import date
from typing import Annotated, Any, Literal, Optional, Union, assert_never

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from booking_core.domain.value_objects import ServiceType


class _Payload(BaseModel):
    model_config = {"frozen": True, "str_strip_whitespace": True, "extra": "forbid"}


class VisaApplication(_Payload):
    service_type: Literal["visa-application"] = "visa-application"
    nationality: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1)
    travel_date: date
    return_date: Optional[date] = None
    purpose: Optional[str] = None
    passport_number: str = Field(..., min_length=5, max_length=20)
    passport_expiry: date
    date_of_birth: date
    # Stored file names of uploaded documents; uploads happen outside the core.
    passport_file: Optional[str] = None
    photo_file: Optional[str] = None
    document_files: list[str] = Field(default_factory=list)
    additional_info: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self) -> VisaApplication:
        if self.passport_expiry <= self.travel_date:
            raise ValueError("passport_expiry must be after travel_date")
        if self.return_date is not None and self.return_date < self.travel_date:
            raise ValueError("return_date must not be before travel_date")
        if self.date_of_birth >= date.today():
            raise ValueError("date_of_birth must be in the past")
        return self


class FlightBooking(_Payload):
    service_type: Literal["flight-booking"] = "flight-booking"
    departure: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1)
    departure_date: date
    return_date: Optional[date] = None
    passengers: int = Field(default=1, ge=1, le=50)
    cabin_class: Literal["economy", "premium-economy", "business", "first"] = "economy"
    preferences: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self) -> FlightBooking:
        if self.return_date is not None and self.return_date < self.departure_date:
            raise ValueError("return_date must not be before departure_date")
        return self


class HotelBooking(_Payload):
    service_type: Literal["hotel-booking"] = "hotel-booking"
    destination: str = Field(..., min_length=1)
    check_in: date
    check_out: date
    guests: int = Field(default=1, ge=1)
    rooms: int = Field(default=1, ge=1)
    hotel_preference: Optional[str] = None
    preferences: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self) -> HotelBooking:
        if self.check_in >= self.check_out:
            raise ValueError("check_in must be before check_out")
        return self


class ConciergeRequest(_Payload):
    service_type: Literal["concierge"] = "concierge"
    destination: str = Field(..., min_length=1)
    start_date: date
    end_date: date
    travelers: int = Field(default=1, ge=1)
    interests: Optional[str] = None
    budget: Optional[str] = None
    special_requests: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self) -> ConciergeRequest:
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class CorporateTravel(_Payload):
    service_type: Literal["corporate-travel"] = "corporate-travel"
    company_name: str = Field(..., min_length=1)
    contact_name: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1)
    start_date: date
    end_date: date
    number_of_travelers: int = Field(default=1, ge=1)
    budget: Optional[str] = None
    requirements: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self) -> CorporateTravel:
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class Consultation(_Payload):
    service_type: Literal["consultation"] = "consultation"
    preferred_date: date
    preferred_time: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    details: Optional[str] = None


class PackageRequest(_Payload):
    service_type: Literal["package-request"] = "package-request"
    package_id: str = Field(..., min_length=1)
    package_name: str = Field(..., min_length=1)
    travelers: int = Field(default=1, ge=1)
    preferred_date: Optional[date] = None
    special_requests: Optional[str] = None


ServicePayload = Annotated[
    Union[
        VisaApplication,
        FlightBooking,
        HotelBooking,
        ConciergeRequest,
        CorporateTravel,
        Consultation,
        PackageRequest,
    ],
    Field(discriminator="service_type"),
]

_payload_adapter: TypeAdapter[ServicePayload] = TypeAdapter(ServicePayload)


def parse_payload(service_type: ServiceType, data: dict[str, Any] | BaseModel) -> ServicePayload:
    """
    Validate raw payload data as the variant for ``service_type``.

    Raises:
        ValueError: if the data carries a different service_type tag
        pydantic.ValidationError: if required/type/range checks fail
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    tag = data.get("service_type", service_type.value)
    if tag != service_type.value:
        raise ValueError(
            f"Payload service_type {tag!r} does not match booking service type "
            f"{service_type.value!r}"
        )
    return _payload_adapter.validate_python({**data, "service_type": service_type.value})


def confirmation_message(payload: ServicePayload) -> tuple[str, dict[str, Any]]:
    """
    Template name and template data for the submission confirmation email.

    Rendering is done by the notification sender; this only picks the fields.
    """
    match payload:
        case VisaApplication():
            return "visa-confirmation", {
                "destination": payload.destination,
                "travel_date": payload.travel_date.isoformat(),
            }
        case FlightBooking():
            return "flight-confirmation", {
                "departure": payload.departure,
                "destination": payload.destination,
                "departure_date": payload.departure_date.isoformat(),
            }
        case HotelBooking():
            return "hotel-confirmation", {
                "destination": payload.destination,
                "check_in": payload.check_in.isoformat(),
                "check_out": payload.check_out.isoformat(),
            }
        case ConciergeRequest():
            return "concierge-confirmation", {"destination": payload.destination}
        case CorporateTravel():
            return "corporate-confirmation", {
                "company_name": payload.company_name,
                "contact_name": payload.contact_name,
            }
        case Consultation():
            return "consultation-confirmation", {
                "date": payload.preferred_date.isoformat(),
                "time": payload.preferred_time,
            }
        case PackageRequest():
            return "package-confirmation", {"package_name": payload.package_name}
        case _:
            assert_never(payload)
