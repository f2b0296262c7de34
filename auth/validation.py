"""
auth/validation.py -- Structural rules for registration and login payloads.

Rules are Pydantic v2 models. validate() runs a payload through a rules model
and converts pydantic.ValidationError into FieldError values, so bad input is
a returned outcome rather than an exception:

    result = validate(body, RegistrationRules, policy=PasswordPolicy.from_settings(settings))
    if not result.ok:
        return 422 with result.error_map()

Only shape is checked here. Email uniqueness is a persistence question and
is answered by the orchestrator against UserStore.

Passwords are validated verbatim: no whitespace stripping, no coercion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, ValidationInfo, field_validator

from auth.models import FieldError, Validated

# bcrypt only looks at the first 72 bytes of its input (bcrypt>=5 refuses longer).
_BCRYPT_MAX_BYTES = 72
_EMAIL_MAX_LENGTH = 255

_SYMBOL_RE = re.compile(r"[^A-Za-z0-9\s]")


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_mixed_case: bool = True
    require_numbers: bool = True
    require_symbols: bool = True

    @classmethod
    def from_settings(cls, settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_mixed_case=settings.password_require_mixed_case,
            require_numbers=settings.password_require_numbers,
            require_symbols=settings.password_require_symbols,
        )

    def violations(self, password: str) -> list[str]:
        problems: list[str] = []
        if len(password) < self.min_length:
            problems.append(f"The password must be at least {self.min_length} characters.")
        if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            problems.append(f"The password must not be greater than {_BCRYPT_MAX_BYTES} bytes.")
        if self.require_mixed_case and not (re.search(r"[a-z]", password) and re.search(r"[A-Z]", password)):
            problems.append("The password must contain at least one uppercase and one lowercase letter.")
        if self.require_numbers and not re.search(r"\d", password):
            problems.append("The password must contain at least one number.")
        if self.require_symbols and not _SYMBOL_RE.search(password):
            problems.append("The password must contain at least one symbol.")
        return problems


def _strip_and_cap_email(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if len(value) > _EMAIL_MAX_LENGTH:
            raise ValueError(f"The email must not be greater than {_EMAIL_MAX_LENGTH} characters.")
    return value


class RegistrationRules(BaseModel):
    """POST /register body."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(min_length=1)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value: Any) -> Any:
        return _strip_and_cap_email(value)

    @field_validator("password")
    @classmethod
    def check_policy(cls, value: str, info: ValidationInfo) -> str:
        policy: PasswordPolicy = (info.context or {}).get("policy") or PasswordPolicy()
        problems = policy.violations(value)
        if problems:
            raise ValueError(" ".join(problems))
        return value


class LoginRules(BaseModel):
    """POST /login body. Presence and shape only -- complexity is not re-checked."""

    model_config = ConfigDict(extra="ignore")

    email: EmailStr
    password: str = Field(min_length=1, max_length=255)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value: Any) -> Any:
        return _strip_and_cap_email(value)


def validate(payload: Any, rules: type[BaseModel], policy: Optional[PasswordPolicy] = None) -> Validated:
    """Check payload against rules. Never raises for bad input."""
    if not isinstance(payload, dict):
        return Validated(errors=[FieldError("body", "The request body must be a JSON object.")])
    try:
        model = rules.model_validate(payload, context={"policy": policy})
    except ValidationError as exc:
        return Validated(errors=[_to_field_error(err) for err in exc.errors()])
    return Validated(data=model.model_dump())


def _to_field_error(err: dict) -> FieldError:
    loc = err.get("loc") or ("body",)
    field = str(loc[0])
    if err.get("type") == "missing":
        return FieldError(field, f"The {field} field is required.")
    message = err.get("msg", "Invalid value.")
    # Pydantic prefixes custom ValueError messages with "Value error, ".
    if message.startswith("Value error, "):
        message = message[len("Value error, ") :]
    return FieldError(field, message)
