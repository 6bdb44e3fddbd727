from __future__ import annotations

from datetime import date

import pytest
from pydantic import ValidationError

from timesheet.forms import (
    ApiTimeEntryForm,
    ProjectForm,
    SignInForm,
    SignUpForm,
    TimeEntryForm,
    UserCreateForm,
    UserUpdateForm,
    form_errors,
)


def _errors(model, data) -> dict[str, str]:
    with pytest.raises(ValidationError) as exc:
        model.model_validate(data)
    return form_errors(exc.value)


def test_sign_in_normalises_email() -> None:
    form = SignInForm.model_validate({"email": "  Sam@Example.COM ", "password": "secret1"})
    assert form.email == "sam@example.com"


def test_sign_in_messages() -> None:
    errors = _errors(SignInForm, {"email": "not-an-email", "password": "123"})
    assert errors["email"] == "Please enter a valid email address."
    assert errors["password"] == "Password must be at least 6 characters."


def test_sign_up_requires_matching_passwords() -> None:
    errors = _errors(
        SignUpForm,
        {"email": "sam@example.com", "full_name": "Sam", "password": "secret1", "confirm_password": "secret2"},
    )
    assert errors == {"__all__": "Passwords don't match"}


def test_project_name_and_blank_description() -> None:
    assert _errors(ProjectForm, {"name": "A"}) == {"name": "Project name must be at least 2 characters."}
    form = ProjectForm.model_validate({"name": "Apollo", "description": "   "})
    assert form.description is None


def test_time_entry_form_from_html_fields() -> None:
    form = TimeEntryForm.model_validate(
        {"entry_type": "task", "project_id": "4", "task_id": "2", "hours": "1.5", "date": "2024-06-03", "notes": ""}
    )
    assert form.task_id == 2
    assert form.project_id is None
    assert form.date == date(2024, 6, 3)
    assert form.notes is None


def test_time_entry_requires_selected_association() -> None:
    errors = _errors(TimeEntryForm, {"entry_type": "project", "project_id": "", "hours": "1", "date": "2024-06-03"})
    assert errors == {"__all__": "You must select either a project or a task"}


@pytest.mark.parametrize(
    ("hours", "message"),
    [("0", "Hours must be at least 0.1"), ("24.5", "Hours cannot exceed 24 per day")],
)
def test_time_entry_hours_bounds(hours: str, message: str) -> None:
    errors = _errors(TimeEntryForm, {"project_id": "1", "hours": hours, "date": "2024-06-03"})
    assert errors["hours"] == message


def test_time_entry_bad_date() -> None:
    errors = _errors(TimeEntryForm, {"project_id": "1", "hours": "2", "date": "June 3rd"})
    assert errors["date"] == "Please pick a valid date."


def test_time_entry_infers_type_for_api_payloads() -> None:
    form = TimeEntryForm.model_validate({"task_id": 7, "hours": 2, "date": "2024-06-03"})
    assert form.entry_type == "task"
    assert form.task_id == 7


def test_api_payload_cannot_carry_both_ids() -> None:
    errors = _errors(TimeEntryForm, {"project_id": 1, "task_id": 7, "hours": 2, "date": "2024-06-03"})
    assert errors == {"__all__": "You must select either a project or a task"}


def test_api_payload_user_id_must_be_an_integer() -> None:
    form = ApiTimeEntryForm.model_validate({"user_id": "3", "project_id": 1, "hours": 2, "date": "2024-06-03"})
    assert form.user_id == 3
    assert "user_id" in _errors(ApiTimeEntryForm, {"user_id": [1], "project_id": 1, "hours": 2, "date": "2024-06-03"})
    assert "user_id" in _errors(ApiTimeEntryForm, {"user_id": {"id": 1}, "project_id": 1, "hours": 2, "date": "2024-06-03"})


def test_user_forms() -> None:
    created = UserCreateForm.model_validate({"email": "A@B.io", "password": "secret1"})
    assert created.role == "user"
    assert created.email == "a@b.io"
    assert "role" in _errors(UserCreateForm, {"email": "a@b.io", "password": "secret1", "role": "owner"})
    update = UserUpdateForm.model_validate({"role": "admin"})
    assert update.full_name is None and update.role == "admin"
