from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from shiftcall.domain.states import AvailabilityStatus, ContactStatus


class ContactProfile(BaseModel):
    # Read-only view of a contact owned by the external CRUD store.
    id: str
    organization_id: str
    first_name: str = ""
    last_name: str = ""
    country_code: str = "US"
    phone: str | None = None
    device_token: str | None = None
    device_platform: str | None = None
    # Portal users without push/SMS capability get an in-app message instead.
    has_login: bool = False
    is_opted_out: bool = False
    status: ContactStatus = ContactStatus.FREE
    availability_status: AvailabilityStatus = AvailabilityStatus.NO_REPLY
    skills: list[str] = Field(default_factory=list)
    qualifications: list[str] = Field(default_factory=list)
    # Ranges formatted as dd/mm/yyyy-dd/mm/yyyy.
    blackout_periods: list[str] = Field(default_factory=list)
    last_response_at: datetime | None = None


class SkillRequirement(BaseModel):
    skill: str
    headcount: int = Field(default=1, ge=1)


class JobProfile(BaseModel):
    id: str
    organization_id: str
    name: str
    location: str = ""
    start_time: datetime
    end_time: datetime
    required_skills: list[str] = Field(default_factory=list)
    required_qualifications: list[str] = Field(default_factory=list)
    skill_requirements: list[SkillRequirement] = Field(default_factory=list)
