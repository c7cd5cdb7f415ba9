"""Pydantic schemas for member applications"""
import re
from datetime import date
from enum import Enum
from typing import Optional
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-\(\)]")


class DietaryPreference(str, Enum):
    OMNIVORE = "omnivore"
    VEGETARIAN = "vegetarian"
    VEGAN = "vegan"
    PESCATARIAN = "pescatarian"
    OTHER = "other"


class TimeWindow(str, Enum):
    """Arrival/departure time windows"""
    MORNING = "12:01 am to 11.00 am"
    AFTERNOON = "11.01 am to 6.00 pm"
    EVENING = "6.01 pm to 12.00 am"


def normalize_phone(phone: str) -> str:
    """Strip spaces, dashes and parentheses"""
    return _PHONE_SEPARATORS.sub("", phone or "")


def is_valid_e164_phone(phone: str) -> bool:
    return bool(_E164.match(phone))


class ApplicationCreate(BaseModel):
    """Application form submission"""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str
    arrival: date
    arrival_time: TimeWindow
    departure: date
    departure_time: TimeWindow
    dietary_preference: DietaryPreference
    allergy_flag: bool = False
    allergy_notes: Optional[str] = Field(None, max_length=2000)
    early_departure_reason: Optional[str] = Field(None, max_length=2000)

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def strip_names(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("dietary_preference", mode="before")
    @classmethod
    def normalize_dietary(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        normalized = normalize_phone(v)
        if not is_valid_e164_phone(normalized):
            raise ValueError("Please enter a valid phone number with country code (e.g., +1234567890)")
        return normalized

    @field_validator("allergy_notes", "early_departure_reason")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def check_dates(self):
        if self.departure <= self.arrival:
            raise ValueError("Departure date must be after arrival date")
        return self


class ApplicationCreated(BaseModel):
    application_id: int
    status: str
    payment_allowed: bool
    requires_ops_review: bool


class ApplicationResponse(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    phone: str
    arrival: date
    arrival_time: str
    departure: date
    departure_time: str
    dietary_preference: str
    allergy_flag: bool
    allergy_notes: Optional[str] = None
    status: str
    payment_allowed: bool
    early_departure_requested: bool
    early_departure_reason: Optional[str] = None
    checkout_session_id: Optional[str] = None

    model_config = {"from_attributes": True}
