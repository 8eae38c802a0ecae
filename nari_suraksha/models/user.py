"""User profile and guardian (emergency contact) models."""

from __future__ import annotations

import re
from datetime import datetime

from pydantic import Field, field_validator

from nari_suraksha.models.base import WireModel, new_id, utcnow
from nari_suraksha.models.enums import LanguageCode, UserRole

_PHONE_RE = re.compile(r"^\+[1-9]\d{7,14}$")


def normalise_phone(value: str) -> str:
    """Normalise a phone number to E.164.

    Bare 10-digit numbers are treated as Indian mobiles and get ``+91``.
    """
    digits = re.sub(r"[\s\-()]", "", value)
    if re.fullmatch(r"\d{10}", digits):
        digits = f"+91{digits}"
    elif re.fullmatch(r"91\d{10}", digits):
        digits = f"+{digits}"
    if not _PHONE_RE.match(digits):
        raise ValueError(f"invalid phone number: {value!r}")
    return digits


class Guardian(WireModel):
    """An emergency contact embedded in the owner's profile.

    ``user_id`` links the contact to a registered user whose push
    tokens receive incident alerts; unlinked guardians are reachable
    only through the fallback link.
    """

    name: str = Field(..., min_length=1, max_length=100)
    phone: str
    user_id: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("guardian name must not be blank")
        return v

    @field_validator("phone")
    @classmethod
    def _normalise(cls, v: str) -> str:
        return normalise_phone(v)


class UserProfile(WireModel):
    id: str = Field(default_factory=new_id)
    phone: str
    name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.COMMUTER
    lang: LanguageCode = LanguageCode.en
    guardians: list[Guardian] = Field(default_factory=list)
    push_tokens: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("phone")
    @classmethod
    def _normalise(cls, v: str) -> str:
        return normalise_phone(v)
