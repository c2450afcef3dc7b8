"""Request bodies accepted by the API.

Each model is frozen and rejects unknown fields; once a body validates the
services receive typed, immutable input. JSON keys are camelCase to match
what the frontend sends.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import SQLITE_MAX_INT


class _RequestModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class RegisterRequest(_RequestModel):
    email: EmailStr
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    password: str = Field(..., min_length=6, max_length=128)
    phone: Optional[str] = Field(None, max_length=32)
    address: Optional[str] = Field(None, max_length=255)
    membership_type: Literal["STANDARD", "PREMIUM", "STUDENT", "STAFF"] = "STANDARD"

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("membership_type", mode="before")
    @classmethod
    def _upper_membership(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class LoginRequest(_RequestModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.lower()


class BorrowRequest(_RequestModel):
    user_id: int = Field(..., gt=0, le=SQLITE_MAX_INT)
    book_id: int = Field(..., gt=0, le=SQLITE_MAX_INT)
    due_date: Optional[datetime] = None

    @field_validator("due_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ReturnRequest(_RequestModel):
    borrow_id: int = Field(..., gt=0, le=SQLITE_MAX_INT)


def format_validation_errors(errors: Iterable[dict]) -> str:
    """Collapse pydantic error dicts into one ``field: message`` line.

    Only the first error is reported, matching what the frontend displays.
    """
    for error in errors:
        loc: List[Any] = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc)
        message = error.get("msg", "Invalid value")
        return f"{field}: {message}" if field else message
    return "Invalid request"
