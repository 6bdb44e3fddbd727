from __future__ import annotations

import importlib
import re

import pytest
from fastapi.testclient import TestClient

from timesheet.auth import hash_password
from timesheet.db import ROLE_USER, TimesheetDB

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "ChangeMe123!"
API_KEY = "test-api-key-0123456789"


@pytest.fixture()
def db(tmp_path):
    store = TimesheetDB(tmp_path / "timesheet.sqlite3")
    yield store
    store.close()


@pytest.fixture()
def app_module(tmp_path, monkeypatch):
    monkeypatch.delenv("TIMESHEET_CONFIG", raising=False)
    monkeypatch.setenv("TIMESHEET_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("TIMESHEET_SECRET_KEY", "test-secret-key-32-chars-aaaaaaaa")
    monkeypatch.setenv("TIMESHEET_HTTPS_ONLY", "0")
    monkeypatch.setenv("TIMESHEET_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver")
    monkeypatch.setenv("TIMESHEET_ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("TIMESHEET_ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("TIMESHEET_API_KEY", API_KEY)
    monkeypatch.setenv("TIMESHEET_ALLOW_REGISTRATION", "1")
    mod = importlib.import_module("timesheet.app")
    mod = importlib.reload(mod)
    yield mod
    mod.DB.close()


@pytest.fixture()
def client(app_module):
    return TestClient(app_module.app)


def extract_csrf(html: str) -> str:
    m = re.search(r'name="csrf_token"\s+value="([^"]+)"', html)
    assert m, "csrf token not found"
    return m.group(1)


def login(client: TestClient, email: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD) -> str:
    res = client.post(
        "/signin",
        data={"email": email, "password": password, "redirect": "/dashboard"},
        follow_redirects=False,
    )
    assert res.status_code == 303
    page = client.get("/dashboard/profile")
    assert page.status_code == 200
    return extract_csrf(page.text)


def add_user(store: TimesheetDB, email: str, *, full_name: str = "", password: str = "secret123", role: str = ROLE_USER) -> int:
    return store.create_user(email=email, full_name=full_name, password_hash=hash_password(password), role=role)
