from __future__ import annotations

import io
import logging
import secrets
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlencode

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from starlette.middleware.sessions import SessionMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from timesheet import reports
from timesheet.auth import (
    API_KEY_HEADER,
    ensure_csrf_token,
    get_user_id,
    hash_password,
    login_session,
    logout_session,
    validate_csrf,
    verify_api_key,
    verify_password,
)
from timesheet.authz import AdminAuthorizer
from timesheet.config import PAGE_SIZES, load_settings
from timesheet.db import ROLE_ADMIN, ROLE_USER, ROLES, EntryRow, TimesheetDB, UserRow
from timesheet.forms import (
    ApiTimeEntryForm,
    ProfileForm,
    ProjectForm,
    SignInForm,
    SignUpForm,
    TaskForm,
    TimeEntryForm,
    UserCreateForm,
    UserUpdateForm,
    form_errors,
)

log = logging.getLogger("timesheet")

ERROR_MESSAGES = {
    "cannot_delete_self": "You cannot delete your own account.",
    "email_taken": "An account with this email already exists.",
    "entry_not_found": "Time entry not found.",
    "invalid_association": "You must select either a project or a task",
    "invalid_role": "Invalid role.",
    "project_in_use": "This project still has time entries and cannot be deleted.",
    "project_not_found": "Project not found.",
    "task_in_use": "This task still has time entries and cannot be deleted.",
    "task_not_found": "Task not found.",
    "user_not_found": "User not found.",
    "version_conflict": "This entry was changed elsewhere. Reload it and try again.",
}

PROTECTED_PREFIXES = ("/dashboard", "/api/timesheet", "/api/admin", "/api/reports")
ADMIN_PREFIX = "/dashboard/admin"
AUTH_PATHS = {"/signin", "/signup"}


def _error_message(code: str, default: str = "Something went wrong.") -> str:
    return ERROR_MESSAGES.get(code, default)


def _has_prefix(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def _safe_next(next_path: str | None) -> str:
    if not next_path:
        return "/dashboard"
    p = str(next_path).strip()
    if not p.startswith("/"):
        return "/dashboard"
    if p.startswith("//"):
        return "/dashboard"
    if "://" in p:
        return "/dashboard"
    return p


def _today() -> date:
    return date.today()


def _fmt_ts(ts: int | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(int(ts)).strftime("%Y-%m-%d %H:%M")


def _redirect(url: str, *, msg: str = "", error: str = "") -> RedirectResponse:
    params = []
    if msg:
        params.append(f"msg={quote(msg)}")
    if error:
        params.append(f"error={quote(error)}")
    if params:
        url += ("&" if "?" in url else "?") + "&".join(params)
    return RedirectResponse(url=url, status_code=303)


def _api_error(message: str, code: int = 400, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=code, content={"ok": False, "error": message, **extra})


def _user_to_dict(user: UserRow) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }


SETTINGS = load_settings()
DB = TimesheetDB(SETTINGS.db_path)
DB.ensure_bootstrap_admin(email=SETTINGS.admin_email, password=SETTINGS.admin_password)
AUTHZ = AdminAuthorizer(DB, ttl=SETTINGS.admin_cache_ttl)

TEMPLATES_DIR = Path(__file__).parent / "templates"
STATIC_DIR = Path(__file__).parent / "static"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

app = FastAPI(title="Timesheet")
app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

_session_secret = SETTINGS.secret_key or secrets.token_urlsafe(48)


def _security_headers(response) -> None:
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "same-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; style-src 'self'; script-src 'self'; img-src 'self' data:; "
        "form-action 'self'; base-uri 'self'; frame-ancestors 'none'"
    )
    if SETTINGS.https_only:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"


def _session_user(request: Request) -> UserRow | None:
    uid = get_user_id(request.session)
    if uid is None:
        return None
    user = DB.get_user(uid)
    if user is None:
        logout_session(request.session)
    return user


@app.middleware("http")
async def _auth_middleware(request: Request, call_next):  # type: ignore
    path = request.url.path
    is_api = path.startswith("/api/")
    protected = any(_has_prefix(path, p) for p in PROTECTED_PREFIXES)

    if not protected and path not in AUTH_PATHS:
        resp = await call_next(request)
        _security_headers(resp)
        return resp

    if _has_prefix(path, "/api/timesheet") and request.headers.get(API_KEY_HEADER):
        resp = await call_next(request)
        _security_headers(resp)
        return resp

    user = _session_user(request)

    if path in AUTH_PATHS:
        if user is not None:
            resp = RedirectResponse(url="/dashboard", status_code=303)
        else:
            resp = await call_next(request)
        _security_headers(resp)
        return resp

    if user is None:
        if _has_prefix(path, "/api/timesheet"):
            resp = _api_error("API key is required", 401)
        elif is_api:
            resp = _api_error("authentication required", 401)
        else:
            resp = RedirectResponse(url=f"/signin?redirect={quote(path)}", status_code=303)
        _security_headers(resp)
        return resp

    if _has_prefix(path, ADMIN_PREFIX):
        check = AUTHZ.check(user.id)
        if not check.is_admin:
            resp = _redirect("/dashboard", error="Admin access required")
            _security_headers(resp)
            return resp

    resp = await call_next(request)
    _security_headers(resp)
    return resp


# Added after the auth middleware so they wrap it: the session is decoded
# before _auth_middleware reads it.
app.add_middleware(
    SessionMiddleware,
    secret_key=_session_secret,
    session_cookie="timesheet_session",
    https_only=SETTINGS.https_only,
    same_site="lax",
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=SETTINGS.allowed_hosts)
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=SETTINGS.trusted_proxies)


@app.on_event("startup")
def _startup() -> None:
    logging.basicConfig(level=SETTINGS.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    if not SETTINGS.secret_key:
        log.warning("TIMESHEET_SECRET_KEY is not set. Session secret will rotate on restart.")
    if not SETTINGS.api_key:
        log.warning("TIMESHEET_API_KEY is not set. /api/timesheet rejects every request.")
    if not SETTINGS.https_only:
        log.warning("TIMESHEET_HTTPS_ONLY is off. Enable it in production.")
    if SETTINGS.trusted_proxies == "*":
        log.warning("TIMESHEET_TRUSTED_PROXIES is \"*\". Forwarded headers are trusted from any peer.")


@app.on_event("shutdown")
def _shutdown() -> None:
    DB.close()


def _require_user(request: Request) -> UserRow:
    user = _session_user(request)
    if user is None:
        raise HTTPException(status_code=401)
    return user


def _require_admin(request: Request) -> UserRow:
    check = AUTHZ.check(get_user_id(request.session))
    if not check.is_admin:
        raise HTTPException(status_code=check.status, detail=check.error)
    assert check.user is not None
    return check.user


def _admin_api_guard(request: Request) -> JSONResponse | None:
    check = AUTHZ.check(get_user_id(request.session))
    if check.is_admin:
        return None
    return _api_error(check.error, check.status)


def _validate_csrf_or_redirect(request: Request, csrf_token: str | None, redirect_to: str) -> RedirectResponse | None:
    if validate_csrf(request.session, csrf_token):
        return None
    return _redirect(redirect_to, error="Your session expired. Please try again.")


def _render(request: Request, name: str, context: dict[str, Any], *, status_code: int = 200) -> HTMLResponse:
    csrf_token = ensure_csrf_token(request.session)
    user = _session_user(request)
    merged = {
        "csrf_token": csrf_token,
        "current_user": user,
        "is_admin": bool(user and user.role == ROLE_ADMIN),
        "allow_registration": SETTINGS.allow_registration,
        "fmt_hours": reports.fmt_hours,
        "fmt_ts": _fmt_ts,
        "flash_error": str(request.query_params.get("error", "") or ""),
        "flash_message": str(request.query_params.get("msg", "") or ""),
        "errors": {},
        **context,
    }
    return templates.TemplateResponse(request, name, merged, status_code=status_code)


def _can_edit_entry(user: UserRow, entry: EntryRow) -> bool:
    return user.role == ROLE_ADMIN or entry.user_id == user.id


def _scope_for(user: UserRow) -> int | None:
    return None if user.role == ROLE_ADMIN else user.id


@app.get("/health", response_class=PlainTextResponse)
def health() -> str:
    return "ok"


@app.get("/")
def index(request: Request):
    if get_user_id(request.session) is not None:
        return RedirectResponse(url="/dashboard", status_code=303)
    return RedirectResponse(url="/signin", status_code=303)


# auth pages


@app.get("/signin", response_class=HTMLResponse)
def signin_page(request: Request, redirect: str = "/dashboard"):
    return _render(request, "signin.html", {"title": "Sign in", "redirect": _safe_next(redirect), "values": {}})


@app.post("/signin")
async def signin(request: Request):
    form = await request.form()
    values = {"email": str(form.get("email", "") or ""), "password": str(form.get("password", "") or "")}
    next_path = _safe_next(str(form.get("redirect", "") or ""))
    context = {"title": "Sign in", "redirect": next_path, "values": {"email": values["email"]}}

    try:
        data = SignInForm.model_validate(values)
    except ValidationError as e:
        return _render(request, "signin.html", {**context, "errors": form_errors(e)}, status_code=400)

    row = DB.get_user_auth(data.email)
    if row is None or not verify_password(data.password, row.password_hash):
        log.warning("Failed sign-in for %s", data.email)
        return _render(
            request,
            "signin.html",
            {**context, "errors": {"__all__": "Invalid email or password."}},
            status_code=401,
        )

    login_session(request.session, user_id=row.id, email=row.email)
    log.info("User %s signed in", row.email)
    return RedirectResponse(url=next_path, status_code=303)


@app.get("/signup", response_class=HTMLResponse)
def signup_page(request: Request):
    if not SETTINGS.allow_registration:
        return RedirectResponse(url="/signin", status_code=303)
    return _render(request, "signup.html", {"title": "Sign up", "values": {}})


@app.post("/signup")
async def signup(request: Request):
    if not SETTINGS.allow_registration:
        return RedirectResponse(url="/signin", status_code=303)

    form = await request.form()
    values = {
        key: str(form.get(key, "") or "") for key in ("full_name", "email", "password", "confirm_password")
    }
    context = {"title": "Sign up", "values": {"full_name": values["full_name"], "email": values["email"]}}

    try:
        data = SignUpForm.model_validate(values)
    except ValidationError as e:
        return _render(request, "signup.html", {**context, "errors": form_errors(e)}, status_code=400)

    try:
        user_id = DB.create_user(
            email=data.email,
            full_name=data.full_name,
            password_hash=hash_password(data.password),
            role=ROLE_USER,
        )
    except ValueError as e:
        return _render(
            request,
            "signup.html",
            {**context, "errors": {"email": _error_message(str(e))}},
            status_code=400,
        )

    login_session(request.session, user_id=user_id, email=data.email)
    log.info("New account %s", data.email)
    return RedirectResponse(url="/dashboard", status_code=303)


@app.post("/signout")
async def signout(request: Request):
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard")
    if redirect:
        return redirect
    logout_session(request.session)
    return RedirectResponse(url="/signin", status_code=303)


# dashboard


@app.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request):
    user = _require_user(request)
    today = _today()
    week_from, week_to = reports.week_bounds(today, SETTINGS.week_start_weekday)

    week_entries = DB.list_entries(
        user_ids=[user.id],
        from_date=week_from.isoformat(),
        to_date=week_to.isoformat(),
    )
    today_hours = sum(e.hours for e in week_entries if e.date == today.isoformat())
    week_hours = sum(e.hours for e in week_entries)

    return _render(
        request,
        "dashboard.html",
        {
            "title": "Dashboard",
            "today": today.isoformat(),
            "today_hours": today_hours,
            "week_hours": week_hours,
            "week_from": week_from.isoformat(),
            "week_to": week_to.isoformat(),
            "recent_entries": DB.list_entries(user_ids=[user.id], limit=5),
            "projects": DB.list_projects(user_id=user.id)[:5],
        },
    )


# time entries


def _entry_form_context(
    *,
    title: str,
    action: str,
    values: dict[str, Any],
    entry: EntryRow | None = None,
    errors: dict[str, str] | None = None,
) -> dict[str, Any]:
    return {
        "title": title,
        "action": action,
        "values": values,
        "entry": entry,
        "errors": errors or {},
        "projects": DB.list_projects(order_by_name=True),
        "tasks": DB.list_tasks(),
    }


def _entry_values(entry: EntryRow) -> dict[str, Any]:
    return {
        "entry_type": entry.entry_type,
        "project_id": entry.project_id or "",
        "task_id": entry.task_id or "",
        "hours": entry.hours,
        "date": entry.date,
        "notes": entry.notes or "",
        "version": entry.version,
    }


async def _read_entry_form(request: Request) -> tuple[dict[str, Any], str]:
    form = await request.form()
    values = {
        key: str(form.get(key, "") or "")
        for key in ("entry_type", "project_id", "task_id", "hours", "date", "notes", "version")
    }
    return values, str(form.get("csrf_token", "") or "")


@app.get("/dashboard/timesheet", response_class=HTMLResponse)
def timesheet_page(request: Request, page: int = 1, size: int = SETTINGS.page_size):
    user = _require_user(request)
    scope = _scope_for(user)
    entries = DB.list_entries(user_ids=[scope] if scope is not None else None)
    paged = reports.paginate(entries, page, size)
    return _render(
        request,
        "timesheet.html",
        {
            "title": "Timesheet",
            "page": paged,
            "total_hours": sum(e.hours for e in entries),
            "show_user": scope is None,
        },
    )


@app.get("/dashboard/timesheet/new", response_class=HTMLResponse)
def new_entry_page(request: Request):
    _require_user(request)
    values = {"entry_type": "project", "date": _today().isoformat(), "hours": "", "notes": ""}
    return _render(
        request,
        "entry_form.html",
        _entry_form_context(title="Log time", action="/dashboard/timesheet/new", values=values),
    )


@app.post("/dashboard/timesheet/new")
async def create_entry(request: Request):
    user = _require_user(request)
    values, csrf_token = await _read_entry_form(request)
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/timesheet/new")
    if redirect:
        return redirect

    try:
        data = TimeEntryForm.model_validate(values)
    except ValidationError as e:
        ctx = _entry_form_context(
            title="Log time", action="/dashboard/timesheet/new", values=values, errors=form_errors(e)
        )
        return _render(request, "entry_form.html", ctx, status_code=400)

    try:
        DB.create_entry(
            user_id=user.id,
            project_id=data.project_id,
            task_id=data.task_id,
            hours=data.hours,
            date=data.date.isoformat(),
            notes=data.notes,
        )
    except ValueError as e:
        ctx = _entry_form_context(
            title="Log time",
            action="/dashboard/timesheet/new",
            values=values,
            errors={"__all__": _error_message(str(e))},
        )
        return _render(request, "entry_form.html", ctx, status_code=400)

    return _redirect("/dashboard/timesheet", msg="Time entry saved")


@app.get("/dashboard/timesheet/{entry_id}/edit", response_class=HTMLResponse)
def edit_entry_page(request: Request, entry_id: int):
    user = _require_user(request)
    entry = DB.get_entry(entry_id)
    if entry is None or not _can_edit_entry(user, entry):
        return _redirect("/dashboard/timesheet", error=_error_message("entry_not_found"))
    return _render(
        request,
        "entry_form.html",
        _entry_form_context(
            title="Edit time entry",
            action=f"/dashboard/timesheet/{entry.id}/edit",
            values=_entry_values(entry),
            entry=entry,
        ),
    )


@app.post("/dashboard/timesheet/{entry_id}/edit")
async def update_entry(request: Request, entry_id: int):
    user = _require_user(request)
    values, csrf_token = await _read_entry_form(request)
    action = f"/dashboard/timesheet/{entry_id}/edit"
    redirect = _validate_csrf_or_redirect(request, csrf_token, action)
    if redirect:
        return redirect

    entry = DB.get_entry(entry_id)
    if entry is None or not _can_edit_entry(user, entry):
        return _redirect("/dashboard/timesheet", error=_error_message("entry_not_found"))

    try:
        data = TimeEntryForm.model_validate(values)
    except ValidationError as e:
        ctx = _entry_form_context(
            title="Edit time entry", action=action, values=values, entry=entry, errors=form_errors(e)
        )
        return _render(request, "entry_form.html", ctx, status_code=400)

    try:
        expected_version = int(values.get("version") or entry.version)
    except ValueError:
        expected_version = entry.version

    try:
        DB.update_entry(
            entry_id=entry.id,
            expected_version=expected_version,
            project_id=data.project_id,
            task_id=data.task_id,
            hours=data.hours,
            date=data.date.isoformat(),
            notes=data.notes,
        )
    except ValueError as e:
        code = str(e)
        current = DB.get_entry(entry_id) or entry
        ctx = _entry_form_context(
            title="Edit time entry",
            action=action,
            values={**values, "version": current.version},
            entry=current,
            errors={"__all__": _error_message(code)},
        )
        return _render(request, "entry_form.html", ctx, status_code=409 if code == "version_conflict" else 400)

    return _redirect("/dashboard/timesheet", msg="Time entry updated")


@app.post("/dashboard/timesheet/{entry_id}/delete")
async def delete_entry(request: Request, entry_id: int):
    user = _require_user(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/timesheet")
    if redirect:
        return redirect

    entry = DB.get_entry(entry_id)
    if entry is None or not _can_edit_entry(user, entry):
        return _redirect("/dashboard/timesheet", error=_error_message("entry_not_found"))

    DB.delete_entry(entry.id)
    log.info("User %s deleted time entry %s", user.email, entry.id)
    return _redirect("/dashboard/timesheet", msg="Time entry deleted")


# projects


def _can_edit_project(user: UserRow, creator_id: int | None) -> bool:
    return user.role == ROLE_ADMIN or (creator_id is not None and creator_id == user.id)


@app.get("/dashboard/projects", response_class=HTMLResponse)
def projects_page(request: Request):
    _require_user(request)
    return _render(request, "projects.html", {"title": "Projects", "projects": DB.list_projects()})


@app.get("/dashboard/projects/new", response_class=HTMLResponse)
def new_project_page(request: Request):
    _require_user(request)
    return _render(
        request,
        "project_form.html",
        {"title": "New project", "action": "/dashboard/projects/new", "values": {}, "project": None},
    )


@app.post("/dashboard/projects/new")
async def create_project(request: Request):
    user = _require_user(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/projects/new")
    if redirect:
        return redirect

    values = {"name": str(form.get("name", "") or ""), "description": str(form.get("description", "") or "")}
    try:
        data = ProjectForm.model_validate(values)
    except ValidationError as e:
        return _render(
            request,
            "project_form.html",
            {
                "title": "New project",
                "action": "/dashboard/projects/new",
                "values": values,
                "project": None,
                "errors": form_errors(e),
            },
            status_code=400,
        )

    project_id = DB.create_project(name=data.name, description=data.description, user_id=user.id)
    return _redirect(f"/dashboard/projects/{project_id}", msg="Project created successfully!")


@app.get("/dashboard/projects/{project_id}", response_class=HTMLResponse)
def project_detail_page(request: Request, project_id: int):
    user = _require_user(request)
    project = DB.get_project(project_id)
    if project is None:
        return _redirect("/dashboard/projects", error=_error_message("project_not_found"))

    scope = _scope_for(user)
    entries = DB.list_entries(project_ids=[project.id], user_ids=[scope] if scope is not None else None)
    days = reports.group_entries(entries, reports.GROUP_DAY)
    per_user: dict[str, float] = {}
    for e in entries:
        per_user[e.user_name] = per_user.get(e.user_name, 0.0) + e.hours

    return _render(
        request,
        "project_detail.html",
        {
            "title": project.name,
            "project": project,
            "entries": entries,
            "total_hours": sum(e.hours for e in entries),
            "per_user": sorted(per_user.items(), key=lambda kv: (-kv[1], kv[0])),
            "days": days,
            "can_edit": _can_edit_project(user, project.user_id),
        },
    )


@app.get("/dashboard/projects/{project_id}/edit", response_class=HTMLResponse)
def edit_project_page(request: Request, project_id: int):
    user = _require_user(request)
    project = DB.get_project(project_id)
    if project is None or not _can_edit_project(user, project.user_id):
        return _redirect("/dashboard/projects", error=_error_message("project_not_found"))
    return _render(
        request,
        "project_form.html",
        {
            "title": "Edit project",
            "action": f"/dashboard/projects/{project.id}/edit",
            "values": {"name": project.name, "description": project.description or ""},
            "project": project,
        },
    )


@app.post("/dashboard/projects/{project_id}/edit")
async def update_project(request: Request, project_id: int):
    user = _require_user(request)
    form = await request.form()
    action = f"/dashboard/projects/{project_id}/edit"
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, action)
    if redirect:
        return redirect

    project = DB.get_project(project_id)
    if project is None or not _can_edit_project(user, project.user_id):
        return _redirect("/dashboard/projects", error=_error_message("project_not_found"))

    values = {"name": str(form.get("name", "") or ""), "description": str(form.get("description", "") or "")}
    try:
        data = ProjectForm.model_validate(values)
    except ValidationError as e:
        return _render(
            request,
            "project_form.html",
            {"title": "Edit project", "action": action, "values": values, "project": project, "errors": form_errors(e)},
            status_code=400,
        )

    DB.update_project(project.id, name=data.name, description=data.description)
    return _redirect(f"/dashboard/projects/{project.id}", msg="Project updated successfully!")


@app.post("/dashboard/projects/{project_id}/delete")
async def delete_project(request: Request, project_id: int):
    user = _require_user(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, f"/dashboard/projects/{project_id}")
    if redirect:
        return redirect

    project = DB.get_project(project_id)
    if project is None or not _can_edit_project(user, project.user_id):
        return _redirect("/dashboard/projects", error=_error_message("project_not_found"))

    try:
        DB.delete_project(project.id)
    except ValueError as e:
        return _redirect(f"/dashboard/projects/{project.id}", error=_error_message(str(e)))

    log.info("User %s deleted project %s", user.email, project.id)
    return _redirect("/dashboard/projects", msg="Project deleted")


# reports


def _report_url(filters: reports.ReportFilters, path: str = "/dashboard/reports", **extra: Any) -> str:
    params = reports.filters_to_params(filters)
    params.extend((k, str(v)) for k, v in extra.items() if v not in (None, ""))
    return f"{path}?{urlencode(params)}"


def _report_options(user: UserRow, filters: reports.ReportFilters, *, size: int, group: str) -> dict[str, Any]:
    users = DB.list_users() if user.role == ROLE_ADMIN else [user]
    today = _today()
    week_start = SETTINGS.week_start_weekday
    extra = {"size": size, "group": group}
    return {
        "user_options": [
            {
                "label": u.display_name,
                "selected": u.id in filters.users,
                "url": _report_url(reports.toggle_user(filters, u.id), **extra),
            }
            for u in users
        ],
        "project_options": [
            {
                "label": p.name,
                "selected": p.id in filters.project_ids,
                "url": _report_url(reports.toggle_project(filters, p.id), **extra),
            }
            for p in DB.list_projects(order_by_name=True)
        ],
        "task_options": [
            {
                "label": t.task_description,
                "selected": t.id in filters.task_ids,
                "url": _report_url(reports.toggle_task(filters, t.id), **extra),
            }
            for t in DB.list_tasks()
        ],
        "range_options": [
            {
                "value": preset,
                "selected": filters.date_range == preset,
                "url": _report_url(reports.with_date_range(filters, preset, today, week_start), **extra),
            }
            for preset in reports.DATE_RANGES
            if preset != reports.RANGE_CUSTOM
        ],
        "type_options": [
            {
                "value": entry_type,
                "selected": filters.entry_type == entry_type,
                "url": _report_url(reports.with_entry_type(filters, entry_type), **extra),
            }
            for entry_type in reports.ENTRY_TYPES
        ],
        "group_options": [
            {"value": g, "selected": g == group, "url": _report_url(filters, size=size, group=g)}
            for g in reports.GROUPINGS
        ],
    }


def _build_report(request: Request, user: UserRow, *, page: int, size: int, group: str) -> reports.ReportResult:
    filters = reports.filters_from_params(request.query_params, _today(), SETTINGS.week_start_weekday)
    return reports.build_report(
        DB,
        filters,
        current_user_id=user.id,
        scope_user_id=_scope_for(user),
        page=page,
        page_size=size,
        group_by=group,
        week_start=SETTINGS.week_start_weekday,
    )


@app.get("/dashboard/reports", response_class=HTMLResponse)
def reports_page(
    request: Request,
    page: int = 1,
    size: int = SETTINGS.page_size,
    group: str = reports.GROUP_DAY,
):
    user = _require_user(request)
    result = _build_report(request, user, page=page, size=size, group=group)
    filters = result.filters
    extra = {"size": result.page.page_size, "group": result.group_by}

    return _render(
        request,
        "reports.html",
        {
            "title": "Reports",
            "result": result,
            "filters": filters,
            "active_filter_count": reports.active_filter_count(filters),
            "size_options": [
                {"value": s, "selected": s == result.page.page_size, "url": _report_url(filters, size=s, group=result.group_by)}
                for s in PAGE_SIZES
            ],
            "prev_url": _report_url(filters, page=result.page.page - 1, **extra),
            "next_url": _report_url(filters, page=result.page.page + 1, **extra),
            "export_url": _report_url(filters, path="/dashboard/reports/export.csv"),
            "clear_url": _report_url(
                reports.with_date_range(reports.ReportFilters(), filters.date_range, _today(), SETTINGS.week_start_weekday)
                if filters.date_range != reports.RANGE_CUSTOM
                else reports.ReportFilters(
                    date_range=reports.RANGE_CUSTOM, start_date=filters.start_date, end_date=filters.end_date
                ),
                **extra,
            ),
            **_report_options(user, filters, size=result.page.page_size, group=result.group_by),
        },
    )


@app.get("/dashboard/reports/export.csv")
def export_report(request: Request):
    user = _require_user(request)
    filters = reports.filters_from_params(request.query_params, _today(), SETTINGS.week_start_weekday)
    entries = reports.run_report(DB, filters, scope_user_id=_scope_for(user))
    payload = reports.entries_to_csv(entries).encode("utf-8-sig")
    filename = reports.csv_filename(_today())
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    log.info("User %s exported %d entries", user.email, len(entries))
    return StreamingResponse(io.BytesIO(payload), media_type="text/csv; charset=utf-8", headers=headers)


# profile


@app.get("/dashboard/profile", response_class=HTMLResponse)
def profile_page(request: Request):
    user = _require_user(request)
    return _render(request, "profile.html", {"title": "Profile", "values": {"full_name": user.full_name}})


@app.post("/dashboard/profile")
async def update_profile(request: Request):
    user = _require_user(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/profile")
    if redirect:
        return redirect

    values = {"full_name": str(form.get("full_name", "") or "")}
    try:
        data = ProfileForm.model_validate(values)
    except ValidationError as e:
        return _render(
            request,
            "profile.html",
            {"title": "Profile", "values": values, "errors": form_errors(e)},
            status_code=400,
        )

    DB.update_user(user.id, full_name=data.full_name)
    AUTHZ.invalidate(user.id)
    return _redirect("/dashboard/profile", msg="Profile updated successfully")


# admin pages


@app.get("/dashboard/admin", response_class=HTMLResponse)
def admin_page(request: Request):
    _require_admin(request)
    return _render(
        request,
        "admin.html",
        {
            "title": "Admin",
            "user_count": len(DB.list_users()),
            "project_count": len(DB.list_projects()),
            "entry_count": DB.count_entries(),
            "tasks": DB.list_tasks(),
        },
    )


@app.post("/dashboard/admin/tasks")
async def create_task(request: Request):
    _require_admin(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/admin")
    if redirect:
        return redirect

    try:
        data = TaskForm.model_validate({"task_description": str(form.get("task_description", "") or "")})
    except ValidationError as e:
        return _redirect("/dashboard/admin", error=form_errors(e).get("task_description", "Invalid task"))

    DB.create_task(task_description=data.task_description)
    return _redirect("/dashboard/admin", msg="Task added successfully")


@app.post("/dashboard/admin/tasks/{task_id}/delete")
async def delete_task(request: Request, task_id: int):
    admin = _require_admin(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/admin")
    if redirect:
        return redirect

    try:
        DB.delete_task(task_id)
    except ValueError as e:
        return _redirect("/dashboard/admin", error=_error_message(str(e)))

    log.info("Admin %s deleted task %s", admin.email, task_id)
    return _redirect("/dashboard/admin", msg="Task deleted successfully")


@app.get("/dashboard/admin/users", response_class=HTMLResponse)
def admin_users_page(request: Request):
    _require_admin(request)
    return _render(
        request,
        "admin_users.html",
        {"title": "Users", "users": DB.list_users(), "roles": ROLES, "values": {"role": ROLE_USER}},
    )


def _create_user(values: dict[str, Any]) -> UserRow:
    data = UserCreateForm.model_validate(values)
    user_id = DB.create_user(
        email=data.email,
        full_name=data.full_name,
        password_hash=hash_password(data.password),
        role=data.role,
    )
    user = DB.get_user(user_id)
    assert user is not None
    return user


def _update_user(user_id: int, values: dict[str, Any]) -> UserRow:
    data = UserUpdateForm.model_validate(values)
    user = DB.update_user(user_id, full_name=data.full_name, role=data.role)
    AUTHZ.invalidate(user_id)
    return user


def _delete_user(actor: UserRow, user_id: int) -> None:
    if actor.id == user_id:
        raise ValueError("cannot_delete_self")
    DB.delete_user(user_id)
    AUTHZ.invalidate(user_id)
    log.info("Admin %s deleted user %s", actor.email, user_id)


@app.post("/dashboard/admin/users")
async def admin_create_user(request: Request):
    _require_admin(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/admin/users")
    if redirect:
        return redirect

    values = {key: str(form.get(key, "") or "") for key in ("email", "password", "full_name", "role")}
    try:
        user = _create_user(values)
    except ValidationError as e:
        return _render(
            request,
            "admin_users.html",
            {
                "title": "Users",
                "users": DB.list_users(),
                "roles": ROLES,
                "values": {k: v for k, v in values.items() if k != "password"},
                "errors": form_errors(e),
            },
            status_code=400,
        )
    except ValueError as e:
        return _redirect("/dashboard/admin/users", error=_error_message(str(e)))

    return _redirect("/dashboard/admin/users", msg=f"User {user.email} created successfully")


@app.post("/dashboard/admin/users/{user_id}/update")
async def admin_update_user(request: Request, user_id: int):
    _require_admin(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/admin/users")
    if redirect:
        return redirect

    values = {key: str(form.get(key, "") or "") or None for key in ("full_name", "role")}
    try:
        _update_user(user_id, values)
    except ValidationError as e:
        return _redirect("/dashboard/admin/users", error="; ".join(form_errors(e).values()))
    except ValueError as e:
        return _redirect("/dashboard/admin/users", error=_error_message(str(e)))

    return _redirect("/dashboard/admin/users", msg="User updated successfully")


@app.post("/dashboard/admin/users/{user_id}/delete")
async def admin_delete_user(request: Request, user_id: int):
    admin = _require_admin(request)
    form = await request.form()
    csrf_token = str(form.get("csrf_token", "") or "")
    redirect = _validate_csrf_or_redirect(request, csrf_token, "/dashboard/admin/users")
    if redirect:
        return redirect

    try:
        _delete_user(admin, user_id)
    except ValueError as e:
        return _redirect("/dashboard/admin/users", error=_error_message(str(e)))

    return _redirect("/dashboard/admin/users", msg="User deleted successfully")


# JSON API


@app.get("/api/check-admin")
def api_check_admin(request: Request):
    uid = get_user_id(request.session)
    if uid is None:
        return {"isAdmin": False, "message": "No session found"}
    check = AUTHZ.check(uid)
    if not check.is_admin:
        return {"isAdmin": False, "message": check.error}
    assert check.user is not None
    return {"isAdmin": True, "userId": check.user.id, "email": check.user.email}


@app.get("/api/admin/users")
def api_list_users(request: Request):
    denied = _admin_api_guard(request)
    if denied:
        return denied
    return {"ok": True, "users": [_user_to_dict(u) for u in DB.list_users()]}


@app.post("/api/admin/users")
async def api_create_user(request: Request):
    denied = _admin_api_guard(request)
    if denied:
        return denied
    try:
        payload = await request.json()
    except ValueError:
        return _api_error("Request body must be JSON")
    if not isinstance(payload, dict):
        return _api_error("Request body must be a JSON object")

    try:
        user = _create_user(payload)
    except ValidationError as e:
        return _api_error("Invalid user data", 400, fields=form_errors(e))
    except ValueError as e:
        code = str(e)
        return _api_error(_error_message(code), 409 if code == "email_taken" else 400)
    except sqlite3.Error:
        log.exception("Failed to create user")
        return _api_error("Failed to create user", 500)

    return JSONResponse(status_code=201, content={"ok": True, "user": _user_to_dict(user)})


@app.get("/api/admin/users/{user_id}")
def api_get_user(request: Request, user_id: int):
    denied = _admin_api_guard(request)
    if denied:
        return denied
    user = DB.get_user(user_id)
    if user is None:
        return _api_error(_error_message("user_not_found"), 404)
    return {"ok": True, "user": _user_to_dict(user)}


@app.patch("/api/admin/users/{user_id}")
async def api_update_user(request: Request, user_id: int):
    denied = _admin_api_guard(request)
    if denied:
        return denied
    try:
        payload = await request.json()
    except ValueError:
        return _api_error("Request body must be JSON")
    if not isinstance(payload, dict):
        return _api_error("Request body must be a JSON object")

    try:
        user = _update_user(user_id, payload)
    except ValidationError as e:
        return _api_error("Invalid user data", 400, fields=form_errors(e))
    except ValueError as e:
        code = str(e)
        return _api_error(_error_message(code), 404 if code == "user_not_found" else 400)
    except sqlite3.Error:
        log.exception("Failed to update user %s", user_id)
        return _api_error("Failed to update user", 500)

    return {"ok": True, "message": "User updated successfully", "user": _user_to_dict(user)}


@app.delete("/api/admin/users/{user_id}")
def api_delete_user(request: Request, user_id: int):
    denied = _admin_api_guard(request)
    if denied:
        return denied
    admin = _require_admin(request)
    try:
        _delete_user(admin, user_id)
    except ValueError as e:
        code = str(e)
        return _api_error(_error_message(code), 404 if code == "user_not_found" else 400)
    except sqlite3.Error:
        log.exception("Failed to delete user %s", user_id)
        return _api_error("Failed to delete user", 500)

    return {"ok": True, "message": "User deleted successfully"}


def _api_key_guard(request: Request) -> JSONResponse | None:
    provided = request.headers.get(API_KEY_HEADER)
    if not provided:
        return _api_error("API key is required", 401)
    if not verify_api_key(provided, SETTINGS.api_key):
        log.warning("Rejected /api/timesheet call with an invalid API key")
        return _api_error("Invalid API key", 401)
    return None


def _optional_int(raw: str | None, name: str) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer") from None


def _optional_date(raw: str | None, name: str) -> str | None:
    if raw is None or raw == "":
        return None
    try:
        return date.fromisoformat(raw).isoformat()
    except ValueError:
        raise ValueError(f"{name} must be a YYYY-MM-DD date") from None


@app.get("/api/timesheet")
def api_list_timesheet(request: Request):
    denied = _api_key_guard(request)
    if denied:
        return denied

    params = request.query_params
    try:
        user_id = _optional_int(params.get("userId"), "userId")
        project_id = _optional_int(params.get("projectId"), "projectId")
        task_id = _optional_int(params.get("taskId"), "taskId")
        start_date = _optional_date(params.get("startDate"), "startDate")
        end_date = _optional_date(params.get("endDate"), "endDate")
    except ValueError as e:
        return _api_error(str(e))
    if user_id is None:
        return _api_error("User ID is required")

    try:
        entries = DB.list_entries(
            user_ids=[user_id],
            from_date=start_date,
            to_date=end_date,
            project_ids=[project_id] if project_id is not None else None,
            task_ids=[task_id] if task_id is not None else None,
        )
    except sqlite3.Error:
        log.exception("Failed to fetch timesheet data")
        return _api_error("Failed to fetch timesheet data", 500)

    return {"ok": True, "data": [reports.entry_to_dict(e) for e in entries]}


@app.post("/api/timesheet")
async def api_create_timesheet(request: Request):
    denied = _api_key_guard(request)
    if denied:
        return denied

    try:
        payload = await request.json()
    except ValueError:
        return _api_error("Request body must be JSON")
    if not isinstance(payload, dict):
        return _api_error("Request body must be a JSON object")

    user_id = payload.get("userId")
    if not user_id or not payload.get("hours") or not payload.get("date"):
        return _api_error("Missing required fields: userId, projectId or taskId, hours, date")

    try:
        data = ApiTimeEntryForm.model_validate(
            {
                "user_id": user_id,
                "project_id": payload.get("projectId"),
                "task_id": payload.get("taskId"),
                "hours": payload.get("hours"),
                "date": payload.get("date"),
                "notes": payload.get("notes"),
            }
        )
        entry_id = DB.create_entry(
            user_id=data.user_id,
            project_id=data.project_id,
            task_id=data.task_id,
            hours=data.hours,
            date=data.date.isoformat(),
            notes=data.notes,
        )
    except ValidationError as e:
        return _api_error("Invalid time entry", 400, fields=form_errors(e))
    except ValueError as e:
        return _api_error(_error_message(str(e), "Invalid time entry"))
    except sqlite3.Error:
        log.exception("Failed to create time entry")
        return _api_error("Failed to create time entry", 500)

    entry = DB.get_entry(entry_id)
    assert entry is not None
    return JSONResponse(status_code=201, content={"ok": True, "data": [reports.entry_to_dict(entry)]})


@app.get("/api/reports/entries")
def api_report_entries(
    request: Request,
    page: int = 1,
    size: int = SETTINGS.page_size,
    group: str = reports.GROUP_DAY,
):
    user = _require_user(request)
    result = _build_report(request, user, page=page, size=size, group=group)
    stats = result.stats
    return {
        "ok": True,
        "entries": [reports.entry_to_dict(e) for e in result.page.items],
        "page": result.page.page,
        "page_size": result.page.page_size,
        "total": result.page.total,
        "total_pages": result.page.total_pages,
        "stats": {
            "total_hours": stats.total_hours,
            "personal_hours": stats.personal_hours,
            "entry_count": stats.entry_count,
            "contributor_count": stats.contributor_count,
            "days_worked": stats.days_worked,
            "avg_hours_per_day": stats.avg_hours_per_day,
            "active_project_count": stats.active_project_count,
            "project_count": stats.project_count,
            "top_project": stats.top_project.__dict__ if stats.top_project else None,
        },
        "groups": [b.__dict__ for b in result.groups],
    }
