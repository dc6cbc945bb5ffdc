"""Account schemas — registration payloads and public account views."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from carelink.models.enums import Gender


class BlindUserCreate(BaseModel):
    """Blind user signup form."""

    name: str = Field(min_length=1, max_length=200)
    age: int = Field(ge=0, le=150)
    gender: Gender
    phone: str | None = Field(default=None, max_length=20)
    email: str | None = Field(default=None, max_length=255)
    address: str | None = Field(default=None, max_length=500)


class GuardianCreate(BaseModel):
    """Guardian signup form."""

    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1)


class BlindUserInfo(BaseModel):
    """Blind user account as returned to callers."""

    blind_id: str
    name: str
    age: int | None = None
    gender: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    guardian_id: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class GuardianInfo(BaseModel):
    """Guardian account as returned to callers (never includes the password hash)."""

    guardian_id: str
    name: str
    email: str
    profile_completed: bool = False
    phone: str | None = None
    address: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}
