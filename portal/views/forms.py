from __future__ import annotations

import re
from typing import Dict

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

MIN_PASSWORD_LENGTH = 6
MIN_DISPLAY_NAME_LENGTH = 3

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def looks_like_email(value: str | None) -> bool:
    return bool(_EMAIL_RE.match((value or "").strip()))


def _email(value: str) -> str:
    v = (value or "").strip()
    if not looks_like_email(v):
        raise ValueError("Please enter a valid email address")
    return v


class LoginForm(BaseModel):
    email: str
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        return _email(v)


class RegisterForm(BaseModel):
    display_name: str = Field(min_length=MIN_DISPLAY_NAME_LENGTH)
    email: str
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)
    confirm_password: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        return _email(v)

    @field_validator("display_name")
    @classmethod
    def _strip_display_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < MIN_DISPLAY_NAME_LENGTH:
            raise ValueError(f"Display name must be at least {MIN_DISPLAY_NAME_LENGTH} characters")
        return v

    @model_validator(mode="after")
    def _passwords_match(self) -> "RegisterForm":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


def form_errors(exc: ValidationError) -> Dict[str, str]:
    """Flatten a pydantic ValidationError into {field: message}; form-level errors go under `form`."""
    out: Dict[str, str] = {}
    for err in exc.errors():
        loc = err.get("loc") or ()
        field = str(loc[0]) if loc else "form"
        msg = str(err.get("msg") or "Invalid value")
        # pydantic prefixes messages raised from validators.
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]
        out.setdefault(field, msg)
    return out
