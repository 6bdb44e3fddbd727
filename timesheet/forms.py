from __future__ import annotations

import datetime as dt
import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from timesheet.db import ENTRY_PROJECT, ENTRY_TASK, ROLE_USER

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_PASSWORD = 6
MIN_HOURS = 0.1
MAX_HOURS = 24.0


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class _Form(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class _EmailMixin(_Form):
    email: str

    @field_validator("email")
    @classmethod
    def valid_email(cls, value: str) -> str:
        if not _EMAIL_RE.match(value):
            raise ValueError("Please enter a valid email address.")
        return value.lower()


class SignInForm(_EmailMixin):
    password: str = Field(min_length=MIN_PASSWORD)


class SignUpForm(_EmailMixin):
    full_name: str = Field(min_length=2)
    password: str = Field(min_length=MIN_PASSWORD)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self) -> "SignUpForm":
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class ProjectForm(_Form):
    name: str = Field(min_length=2)
    description: Optional[str] = None

    blank_description = field_validator("description", mode="before")(_blank_to_none)


class TaskForm(_Form):
    task_description: str = Field(min_length=1)


class ProfileForm(_Form):
    full_name: str = Field(min_length=2)


class UserCreateForm(_EmailMixin):
    password: str = Field(min_length=MIN_PASSWORD)
    full_name: str = ""
    role: Literal["admin", "user"] = ROLE_USER


class UserUpdateForm(_Form):
    full_name: Optional[str] = None
    role: Optional[Literal["admin", "user"]] = None


class TimeEntryForm(_Form):
    entry_type: Literal["project", "task"] = ENTRY_PROJECT
    project_id: Optional[int] = None
    task_id: Optional[int] = None
    hours: float = Field(ge=MIN_HOURS, le=MAX_HOURS)
    date: dt.date
    notes: Optional[str] = None

    blank_optionals = field_validator("project_id", "task_id", "notes", mode="before")(_blank_to_none)

    @model_validator(mode="before")
    @classmethod
    def infer_entry_type(cls, data: Any) -> Any:
        # API payloads give at most one of the ids and no entry_type.
        if isinstance(data, dict) and not data.get("entry_type"):
            data = dict(data)
            has_project = _blank_to_none(data.get("project_id")) is not None
            has_task = _blank_to_none(data.get("task_id")) is not None
            if has_project and has_task:
                raise ValueError("You must select either a project or a task")
            data["entry_type"] = ENTRY_TASK if has_task else ENTRY_PROJECT
        return data

    @model_validator(mode="after")
    def one_association(self) -> "TimeEntryForm":
        if self.entry_type == ENTRY_PROJECT:
            if not self.project_id:
                raise ValueError("You must select either a project or a task")
            self.task_id = None
        else:
            if not self.task_id:
                raise ValueError("You must select either a project or a task")
            self.project_id = None
        return self


class ApiTimeEntryForm(TimeEntryForm):
    user_id: int = Field(gt=0)


_MESSAGES = {
    "string_too_short": {
        "password": f"Password must be at least {MIN_PASSWORD} characters.",
        "full_name": "Full name must be at least 2 characters.",
        "name": "Project name must be at least 2 characters.",
        "task_description": "Task description is required.",
    },
    "greater_than_equal": {"hours": "Hours must be at least 0.1"},
    "less_than_equal": {"hours": "Hours cannot exceed 24 per day"},
}

_FIELD_MESSAGES = {
    "date": "Please pick a valid date.",
    "email": "Please enter a valid email address.",
}


def form_errors(exc: ValidationError) -> dict[str, str]:
    """Flatten a ValidationError into ``{field: message}``; model-level errors go under ``__all__``."""
    out: dict[str, str] = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "__root__"]
        key = loc[0] if loc else "__all__"
        if key in out:
            continue
        message = _MESSAGES.get(err.get("type", ""), {}).get(key) or _FIELD_MESSAGES.get(key)
        if message is None:
            message = str(err.get("msg", "Invalid value"))
            if message.startswith("Value error, "):
                message = message[len("Value error, ") :]
        out[key] = message
    return out
