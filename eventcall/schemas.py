"""Pydantic models for the JSON documents EventCall stores in GitHub."""

from __future__ import annotations

import uuid
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError
from pydantic.alias_generators import to_camel

from .errors import ValidationError

QuestionType = Literal["text", "choice", "date", "datetime"]
ModelT = TypeVar("ModelT", bound=BaseModel)

def parse_document(model: type[ModelT], data: Any) -> ModelT:
    """Validate ``data`` as ``model``, reporting problems as ``ValidationError``."""
    try:
        return model.model_validate(data)
    except SchemaError as exc:
        problems = [
            f"{'.'.join(str(part) for part in error['loc']) or model.__name__}: {error['msg']}"
            for error in exc.errors()
        ]
        raise ValidationError(problems) from exc


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

def _question_id() -> str:
    return f"q_{uuid.uuid4().hex[:12]}"

class CustomQuestion(CamelModel):
    id: str = Field(default_factory=_question_id)
    question: str
    type: QuestionType = "text"
    options: list[str] | None = None
    required: bool = False

class EventDetail(CamelModel):
    label: str = ""
    value: Any = None

class Event(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    date: str
    time: str
    location: str = ""
    description: str = ""
    cover_image: str | None = None
    ask_reason: bool = False
    allow_guests: bool = True
    requires_meal_choice: bool = False
    custom_questions: list[CustomQuestion] = Field(default_factory=list)
    event_details: dict[str, EventDetail] = Field(default_factory=dict)
    created_by: str | None = None
    created_by_name: str | None = None
    created: int | str | None = None
    last_modified: int | str | None = None
    status: str = "active"

    def owned_by(self, username: str | None, email: str | None = None) -> bool:
        owners = {value.lower() for value in (username, email) if value}
        candidates = {
            str(value).lower()
            for value in (
                self.created_by,
                (self.model_extra or {}).get("createdByUsername"),
                (self.model_extra or {}).get("managerEmail"),
            )
            if value
        }
        return bool(owners & candidates)

class RSVP(CamelModel):
    rsvp_id: str | None = None
    event_id: str
    name: str
    email: str
    phone: str = ""
    attending: bool | None = None
    guest_count: int = Field(default=0, ge=0)
    reason: str = ""
    rank: str = ""
    unit: str = ""
    branch: str = ""
    dietary_restrictions: list[str] = Field(default_factory=list)
    allergy_details: str = ""
    custom_answers: dict[str, Any] = Field(default_factory=dict)
    timestamp: int | None = None
    submission_method: str | None = None
    user_agent: str | None = None
    validation_hash: str | None = None
    csrf_token: str | None = None
    edit_token: str | None = None
    check_in_token: str | None = None
    is_update: bool = False
    last_modified: int | None = None

    @field_validator("email")
    @classmethod
    def _normalise_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("name", "event_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @property
    def headcount(self) -> int:
        """People this response brings: the guest plus companions."""
        return 1 + self.guest_count if self.attending else 0

    @property
    def recency(self) -> int:
        return self.last_modified or self.timestamp or 0

class User(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    username: str
    name: str = ""
    email: str = ""
    branch: str = ""
    rank: str = ""
    role: str = "user"
    password_hash: str | None = None
    created: str | None = None
    password_changed_at: str | None = None
    last_modified: str | None = None

    @field_validator("username")
    @classmethod
    def _normalise_username(cls, value: str) -> str:
        return value.strip().lower()

    def public(self) -> dict[str, Any]:
        data = self.to_json()
        data.pop("passwordHash", None)
        return data

class Registration(BaseModel):
    username: str
    password: str
    name: str = ""
    email: str = ""
    branch: str = ""
    rank: str = ""
