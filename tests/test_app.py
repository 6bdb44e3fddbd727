from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import API_KEY, add_user, extract_csrf, login
from timesheet.db import ROLE_ADMIN


def test_health_and_auth_flow(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.text == "ok"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert "default-src 'self'" in r.headers["Content-Security-Policy"]

    r = client.get("/dashboard/reports", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/signin?redirect=/dashboard/reports"

    assert client.get("/signin").status_code == 200
    login(client)

    assert client.get("/dashboard").status_code == 200
    r = client.get("/signin", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/dashboard"


def test_wrong_password_is_rejected(client) -> None:
    r = client.post("/signin", data={"email": "admin@example.com", "password": "wrong-password"})
    assert r.status_code == 401
    assert "Invalid email or password." in r.text


def test_signin_redirects_back_to_requested_page(client) -> None:
    r = client.post(
        "/signin",
        data={"email": "admin@example.com", "password": "ChangeMe123!", "redirect": "/dashboard/projects"},
        follow_redirects=False,
    )
    assert r.headers["location"] == "/dashboard/projects"

    r = client.post(
        "/signin",
        data={"email": "admin@example.com", "password": "ChangeMe123!", "redirect": "//evil.example"},
        follow_redirects=False,
    )
    assert r.status_code == 303


def test_signup_creates_regular_user(client, app_module) -> None:
    page = client.get("/signup")
    r = client.post(
        "/signup",
        data={
            "csrf_token": extract_csrf(page.text),
            "full_name": "Sam Jones",
            "email": "Sam@Example.com",
            "password": "secret1",
            "confirm_password": "secret1",
        },
        follow_redirects=False,
    )
    assert r.status_code == 303
    user = app_module.DB.get_user_by_email("sam@example.com")
    assert user is not None and user.role == "user"

    r = client.get("/dashboard/admin", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"].startswith("/dashboard?error=")

    assert client.get("/api/admin/users").status_code == 403
    assert client.get("/api/check-admin").json() == {
        "isAdmin": False,
        "message": "User does not have admin privileges",
    }


def test_signup_duplicate_email(client) -> None:
    page = client.get("/signup")
    r = client.post(
        "/signup",
        data={
            "csrf_token": extract_csrf(page.text),
            "full_name": "Admin Again",
            "email": "admin@example.com",
            "password": "secret1",
            "confirm_password": "secret1",
        },
    )
    assert r.status_code == 400
    assert "An account with this email already exists." in r.text


def test_api_routes_need_a_session(client) -> None:
    r = client.get("/api/reports/entries")
    assert r.status_code == 401
    assert r.json()["ok"] is False
    assert client.get("/api/check-admin").json() == {"isAdmin": False, "message": "No session found"}


def test_check_admin_for_admin(client, app_module) -> None:
    login(client)
    data = client.get("/api/check-admin").json()
    assert data["isAdmin"] is True
    assert data["email"] == "admin@example.com"
    assert data["userId"] == app_module.DB.get_user_by_email("admin@example.com").id


def test_csrf_is_required(client) -> None:
    login(client)
    r = client.post("/dashboard/projects/new", data={"name": "Apollo"}, follow_redirects=False)
    assert r.status_code == 303
    assert "error=" in r.headers["location"]


def test_time_entry_lifecycle(client, app_module) -> None:
    csrf = login(client)
    db = app_module.DB
    pid = db.create_project(name="Apollo", description=None, user_id=None)

    r = client.post(
        "/dashboard/timesheet/new",
        data={
            "csrf_token": csrf,
            "entry_type": "project",
            "project_id": str(pid),
            "task_id": "",
            "hours": "2.5",
            "date": "2024-06-03",
            "notes": "pairing",
        },
        follow_redirects=False,
    )
    assert r.status_code == 303
    entry = db.list_entries()[0]
    assert (entry.project_id, entry.hours, entry.version) == (pid, 2.5, 1)

    listing = client.get("/dashboard/timesheet")
    assert "pairing" in listing.text

    edit = client.get(f"/dashboard/timesheet/{entry.id}/edit")
    assert 'name="version" value="1"' in edit.text

    r = client.post(
        f"/dashboard/timesheet/{entry.id}/edit",
        data={
            "csrf_token": csrf,
            "version": "1",
            "entry_type": "project",
            "project_id": str(pid),
            "hours": "3",
            "date": "2024-06-03",
        },
        follow_redirects=False,
    )
    assert r.status_code == 303
    assert db.get_entry(entry.id).version == 2

    stale = client.post(
        f"/dashboard/timesheet/{entry.id}/edit",
        data={
            "csrf_token": csrf,
            "version": "1",
            "entry_type": "project",
            "project_id": str(pid),
            "hours": "5",
            "date": "2024-06-03",
        },
    )
    assert stale.status_code == 409
    assert "changed elsewhere" in stale.text
    assert db.get_entry(entry.id).hours == 3

    r = client.post(f"/dashboard/timesheet/{entry.id}/delete", data={"csrf_token": csrf}, follow_redirects=False)
    assert r.status_code == 303
    assert db.get_entry(entry.id) is None


def test_time_entry_validation_rerenders_form(client, app_module) -> None:
    csrf = login(client)
    r = client.post(
        "/dashboard/timesheet/new",
        data={"csrf_token": csrf, "entry_type": "project", "project_id": "", "hours": "30", "date": "2024-06-03"},
    )
    assert r.status_code == 400
    assert "Hours cannot exceed 24 per day" in r.text
    assert app_module.DB.count_entries() == 0


def test_users_cannot_touch_other_users_entries(client, app_module) -> None:
    db = app_module.DB
    owner = add_user(db, "owner@example.com")
    pid = db.create_project(name="Apollo", description=None, user_id=owner)
    eid = db.create_entry(user_id=owner, project_id=pid, task_id=None, hours=2, date="2024-06-03", notes="secret")
    add_user(db, "other@example.com")

    csrf = login(client, "other@example.com", "secret123")
    r = client.get(f"/dashboard/timesheet/{eid}/edit", follow_redirects=False)
    assert r.status_code == 303
    r = client.post(f"/dashboard/timesheet/{eid}/delete", data={"csrf_token": csrf}, follow_redirects=False)
    assert "error=" in r.headers["location"]
    assert db.get_entry(eid) is not None

    assert "secret" not in client.get("/dashboard/timesheet").text
    data = client.get("/api/reports/entries", params={"range": "all"}).json()
    assert data["total"] == 0


def test_project_pages(client, app_module) -> None:
    csrf = login(client)
    r = client.post(
        "/dashboard/projects/new",
        data={"csrf_token": csrf, "name": "Apollo", "description": "Moon"},
        follow_redirects=False,
    )
    assert r.status_code == 303
    project = app_module.DB.list_projects()[0]
    assert r.headers["location"].startswith(f"/dashboard/projects/{project.id}")
    assert project.creator_name == "Administrator"

    assert "Apollo" in client.get("/dashboard/projects").text
    assert "Moon" in client.get(f"/dashboard/projects/{project.id}").text

    app_module.DB.create_entry(
        user_id=project.user_id, project_id=project.id, task_id=None, hours=1, date="2024-06-03", notes=None
    )
    r = client.post(f"/dashboard/projects/{project.id}/delete", data={"csrf_token": csrf}, follow_redirects=False)
    assert "error=" in r.headers["location"]
    assert app_module.DB.get_project(project.id) is not None


def test_reports_page_and_csv_export(client, app_module) -> None:
    login(client)
    db = app_module.DB
    admin = db.get_user_by_email("admin@example.com")
    pid = db.create_project(name="Apollo", description=None, user_id=admin.id)
    tid = db.create_task(task_description="Review")
    db.create_entry(user_id=admin.id, project_id=pid, task_id=None, hours=3, date="2024-06-03", notes="a, b")
    db.create_entry(user_id=admin.id, project_id=None, task_id=tid, hours=1, date="2024-06-04", notes=None)

    params = {"range": "custom", "start": "2024-06-03", "end": "2024-06-09", "group": "project"}
    page = client.get("/dashboard/reports", params=params)
    assert page.status_code == 200
    assert "Apollo" in page.text

    r = client.get("/dashboard/reports/export.csv", params={**params, "type": "project"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "time-entries-report-" in r.headers["content-disposition"]
    lines = r.content.decode("utf-8-sig").strip().splitlines()
    assert lines[0] == "Date,User,Type,Project/Task,Hours,Notes"
    assert len(lines) == 2
    assert lines[1] == '2024-06-03,Administrator,Project,Apollo,3,"a, b"'

    data = client.get("/api/reports/entries", params=params).json()
    assert data["ok"] is True
    assert data["total"] == 2
    assert data["stats"]["total_hours"] == 4
    assert data["stats"]["top_project"]["name"] == "Apollo"
    assert [g["label"] for g in data["groups"]] == ["Apollo", "Review"]


def test_profile_update(client, app_module) -> None:
    csrf = login(client)
    r = client.post("/dashboard/profile", data={"csrf_token": csrf, "full_name": "Ada Admin"}, follow_redirects=False)
    assert r.status_code == 303
    assert app_module.DB.get_user_by_email("admin@example.com").full_name == "Ada Admin"


def test_admin_tasks(client, app_module) -> None:
    csrf = login(client)
    assert client.get("/dashboard/admin").status_code == 200

    client.post("/dashboard/admin/tasks", data={"csrf_token": csrf, "task_description": "Review"})
    task = app_module.DB.list_tasks()[0]
    assert task.task_description == "Review"

    r = client.post(f"/dashboard/admin/tasks/{task.id}/delete", data={"csrf_token": csrf}, follow_redirects=False)
    assert "msg=" in r.headers["location"]
    assert app_module.DB.list_tasks() == []


def test_admin_user_api(client, app_module) -> None:
    login(client)
    r = client.post(
        "/api/admin/users",
        json={"email": "new@example.com", "password": "secret1", "full_name": "New Person"},
    )
    assert r.status_code == 201
    uid = r.json()["user"]["id"]

    dup = client.post("/api/admin/users", json={"email": "NEW@example.com", "password": "secret1"})
    assert dup.status_code == 409

    bad = client.post("/api/admin/users", json={"email": "nope", "password": "1"})
    assert bad.status_code == 400
    assert set(bad.json()["fields"]) == {"email", "password"}

    assert client.get(f"/api/admin/users/{uid}").json()["user"]["email"] == "new@example.com"
    assert client.get("/api/admin/users/9999").status_code == 404

    r = client.patch(f"/api/admin/users/{uid}", json={"role": "admin"})
    assert r.status_code == 200
    assert r.json()["user"]["role"] == ROLE_ADMIN
    assert app_module.AUTHZ.check(uid).is_admin

    me = app_module.DB.get_user_by_email("admin@example.com")
    assert client.delete(f"/api/admin/users/{me.id}").status_code == 400
    assert client.delete(f"/api/admin/users/{uid}").status_code == 200
    assert client.delete(f"/api/admin/users/{uid}").status_code == 404


def test_admin_user_pages(client, app_module) -> None:
    csrf = login(client)
    assert client.get("/dashboard/admin/users").status_code == 200

    client.post(
        "/dashboard/admin/users",
        data={"csrf_token": csrf, "email": "page@example.com", "password": "secret1", "full_name": "", "role": "user"},
    )
    user = app_module.DB.get_user_by_email("page@example.com")
    assert user is not None

    client.post(f"/dashboard/admin/users/{user.id}/update", data={"csrf_token": csrf, "full_name": "Paige", "role": "admin"})
    assert app_module.DB.get_user(user.id).role == ROLE_ADMIN

    client.post(f"/dashboard/admin/users/{user.id}/delete", data={"csrf_token": csrf})
    assert app_module.DB.get_user(user.id) is None


def test_demoted_admin_loses_access_immediately(client, app_module) -> None:
    db = app_module.DB
    uid = add_user(db, "deputy@example.com", role=ROLE_ADMIN)

    deputy = TestClient(app_module.app)
    login(deputy, "deputy@example.com", "secret123")
    assert deputy.get("/dashboard/admin").status_code == 200

    login(client)
    client.patch(f"/api/admin/users/{uid}", json={"role": "user"})
    r = deputy.get("/dashboard/admin", follow_redirects=False)
    assert r.status_code == 303


def test_timesheet_api_key(client, app_module) -> None:
    db = app_module.DB
    uid = add_user(db, "bot@example.com")
    pid = db.create_project(name="Apollo", description=None, user_id=uid)

    r = client.get("/api/timesheet", params={"userId": uid})
    assert r.status_code == 401
    assert r.json()["error"] == "API key is required"

    r = client.get("/api/timesheet", params={"userId": uid}, headers={"x-api-key": "wrong"})
    assert r.status_code == 401
    assert r.json()["error"] == "Invalid API key"

    headers = {"x-api-key": API_KEY}
    assert client.get("/api/timesheet", headers=headers).status_code == 400

    r = client.post(
        "/api/timesheet",
        headers=headers,
        json={"userId": uid, "projectId": pid, "hours": 2, "date": "2024-06-03", "notes": "via api"},
    )
    assert r.status_code == 201
    assert r.json()["data"][0]["project_name"] == "Apollo"

    r = client.post(
        "/api/timesheet",
        headers=headers,
        json={"userId": uid, "projectId": pid, "hours": 30, "date": "2024-06-03"},
    )
    assert r.status_code == 400

    r = client.post("/api/timesheet", headers=headers, json={"userId": uid, "projectId": 999, "hours": 1, "date": "2024-06-03"})
    assert r.status_code == 400
    assert r.json()["error"] == "Project not found."

    r = client.get("/api/timesheet", params={"userId": uid, "startDate": "2024-06-01"}, headers=headers)
    data = r.json()["data"]
    assert [e["notes"] for e in data] == ["via api"]

    r = client.get("/api/timesheet", params={"userId": uid, "startDate": "soon"}, headers=headers)
    assert r.status_code == 400


def test_timesheet_api_rejects_malformed_payloads(client, app_module) -> None:
    db = app_module.DB
    uid = add_user(db, "bot@example.com")
    pid = db.create_project(name="Apollo", description=None, user_id=uid)
    tid = db.create_task(task_description="Review")
    headers = {"x-api-key": API_KEY}

    for bad_user in ([uid], {"id": uid}):
        r = client.post(
            "/api/timesheet",
            headers=headers,
            json={"userId": bad_user, "projectId": pid, "hours": 1, "date": "2024-06-03"},
        )
        assert r.status_code == 400
        assert r.json()["ok"] is False
        assert "user_id" in r.json()["fields"]

    r = client.post(
        "/api/timesheet",
        headers=headers,
        json={"userId": uid, "projectId": pid, "taskId": tid, "hours": 1, "date": "2024-06-03"},
    )
    assert r.status_code == 400
    assert r.json()["fields"] == {"__all__": "You must select either a project or a task"}
    assert db.list_entries() == []


def test_reports_search_form_keeps_the_selected_range(client, app_module) -> None:
    login(client)
    db = app_module.DB
    admin = db.get_user_by_email("admin@example.com")
    pid = db.create_project(name="Apollo", description=None, user_id=admin.id)
    db.create_entry(user_id=admin.id, project_id=pid, task_id=None, hours=0.25, date="2020-01-15", notes="needle")

    page = client.get("/dashboard/reports", params={"range": "all", "size": 20, "group": "project"})
    assert page.status_code == 200
    assert "2020-01-15" in page.text
    assert '<input type="hidden" name="range" value="all">' in page.text
    assert '<input type="hidden" name="size" value="20">' in page.text
    assert '<input type="hidden" name="group" value="project">' in page.text

    # The fields the search form submits from the "all" view.
    form = [
        ("range", "all"),
        ("size", "20"),
        ("group", "project"),
        ("type", "all"),
        ("start", ""),
        ("end", ""),
        ("q", "needle"),
    ]
    page = client.get("/dashboard/reports", params=form)
    assert page.status_code == 200
    assert "2020-01-15" in page.text
    assert "0.25" in page.text
    assert '<input type="hidden" name="range" value="all">' in page.text
    assert '<input type="hidden" name="group" value="project">' in page.text

    page = client.get("/dashboard/reports", params={"range": "custom", "start": "2020-01-01", "end": ""})
    assert page.status_code == 200
    assert "2020-01-15" in page.text
    assert '<input type="hidden" name="range" value="custom">' in page.text
