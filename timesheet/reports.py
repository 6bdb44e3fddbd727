"""Report filtering, aggregation and export.

Filter state is an immutable :class:`ReportFilters`. Every UI action
(toggle a user, switch entry type, pick a preset) produces a new state.
"""

from __future__ import annotations

import csv
import io
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Iterable, Sequence

from timesheet.config import PAGE_SIZES
from timesheet.db import ENTRY_PROJECT, ENTRY_TASK, EntryRow, TimesheetDB

log = logging.getLogger("timesheet.reports")

RANGE_CURRENT_WEEK = "currentWeek"
RANGE_PREVIOUS_WEEK = "previousWeek"
RANGE_THIS_MONTH = "thisMonth"
RANGE_LAST_MONTH = "lastMonth"
RANGE_ALL = "all"
RANGE_CUSTOM = "custom"
DATE_RANGES = (
    RANGE_CURRENT_WEEK,
    RANGE_PREVIOUS_WEEK,
    RANGE_THIS_MONTH,
    RANGE_LAST_MONTH,
    RANGE_ALL,
    RANGE_CUSTOM,
)

TYPE_ALL = "all"
ENTRY_TYPES = (TYPE_ALL, ENTRY_PROJECT, ENTRY_TASK)

GROUP_DAY = "day"
GROUP_WEEK = "week"
GROUP_MONTH = "month"
GROUP_PROJECT = "project"
GROUPINGS = (GROUP_DAY, GROUP_WEEK, GROUP_MONTH, GROUP_PROJECT)

CSV_COLUMNS = ["Date", "User", "Type", "Project/Task", "Hours", "Notes"]

SUNDAY = 6


@dataclass(frozen=True)
class ReportFilters:
    date_range: str = RANGE_CURRENT_WEEK
    start_date: date | None = None
    end_date: date | None = None
    users: tuple[int, ...] = ()
    entry_type: str = TYPE_ALL
    project_ids: tuple[int, ...] = ()
    task_ids: tuple[int, ...] = ()
    search_term: str = ""


@dataclass(frozen=True)
class TopProject:
    name: str
    hours: float
    share: float


@dataclass(frozen=True)
class ReportStats:
    total_hours: float = 0.0
    personal_hours: float = 0.0
    entry_count: int = 0
    contributor_count: int = 0
    days_worked: int = 0
    avg_hours_per_day: float = 0.0
    active_project_count: int = 0
    project_count: int = 0
    top_project: TopProject | None = None


@dataclass(frozen=True)
class Bucket:
    key: str
    label: str
    hours: float
    entry_count: int


@dataclass(frozen=True)
class Page:
    items: list[EntryRow]
    page: int
    page_size: int
    total: int
    total_pages: int

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@dataclass(frozen=True)
class ReportResult:
    filters: ReportFilters
    entries: list[EntryRow]
    stats: ReportStats
    page: Page
    groups: list[Bucket] = field(default_factory=list)
    group_by: str = GROUP_DAY


# date ranges


def week_bounds(base: date, week_start: int = SUNDAY) -> tuple[date, date]:
    start = base - timedelta(days=(base.weekday() - week_start) % 7)
    return start, start + timedelta(days=6)


def month_bounds(base: date) -> tuple[date, date]:
    first = base.replace(day=1)
    if first.month == 12:
        next_month = date(first.year + 1, 1, 1)
    else:
        next_month = date(first.year, first.month + 1, 1)
    return first, next_month - timedelta(days=1)


def resolve_date_range(preset: str, today: date, week_start: int = SUNDAY) -> tuple[date | None, date | None]:
    if preset == RANGE_CURRENT_WEEK:
        return week_bounds(today, week_start)
    if preset == RANGE_PREVIOUS_WEEK:
        return week_bounds(today - timedelta(days=7), week_start)
    if preset == RANGE_THIS_MONTH:
        return month_bounds(today)
    if preset == RANGE_LAST_MONTH:
        first, _ = month_bounds(today)
        return month_bounds(first - timedelta(days=1))
    if preset == RANGE_ALL:
        return None, None
    raise ValueError(f"no fixed bounds for date range {preset!r}")


def default_filters(today: date, week_start: int = SUNDAY) -> ReportFilters:
    start, end = resolve_date_range(RANGE_CURRENT_WEEK, today, week_start)
    return ReportFilters(date_range=RANGE_CURRENT_WEEK, start_date=start, end_date=end)


# state transitions


def with_date_range(filters: ReportFilters, preset: str, today: date, week_start: int = SUNDAY) -> ReportFilters:
    if preset not in DATE_RANGES:
        raise ValueError(f"unknown date range {preset!r}")
    if preset == RANGE_CUSTOM:
        return replace(filters, date_range=RANGE_CUSTOM)
    start, end = resolve_date_range(preset, today, week_start)
    return replace(filters, date_range=preset, start_date=start, end_date=end)


def with_start_date(filters: ReportFilters, value: date) -> ReportFilters:
    return replace(filters, date_range=RANGE_CUSTOM, start_date=value)


def with_end_date(filters: ReportFilters, value: date) -> ReportFilters:
    return replace(filters, date_range=RANGE_CUSTOM, end_date=value)


def with_entry_type(filters: ReportFilters, entry_type: str) -> ReportFilters:
    if entry_type not in ENTRY_TYPES:
        raise ValueError(f"unknown entry type {entry_type!r}")
    return replace(
        filters,
        entry_type=entry_type,
        project_ids=() if entry_type == ENTRY_TASK else filters.project_ids,
        task_ids=() if entry_type == ENTRY_PROJECT else filters.task_ids,
    )


def _toggle(values: tuple[int, ...], value: int) -> tuple[int, ...]:
    if value in values:
        return tuple(v for v in values if v != value)
    return values + (value,)


def toggle_user(filters: ReportFilters, user_id: int) -> ReportFilters:
    return replace(filters, users=_toggle(filters.users, int(user_id)))


def toggle_project(filters: ReportFilters, project_id: int) -> ReportFilters:
    return replace(filters, project_ids=_toggle(filters.project_ids, int(project_id)))


def toggle_task(filters: ReportFilters, task_id: int) -> ReportFilters:
    return replace(filters, task_ids=_toggle(filters.task_ids, int(task_id)))


def with_search(filters: ReportFilters, term: str) -> ReportFilters:
    return replace(filters, search_term=str(term or ""))


def active_filter_count(filters: ReportFilters) -> int:
    count = 0
    if filters.users:
        count += 1
    if filters.entry_type != TYPE_ALL:
        count += 1
    if filters.project_ids:
        count += 1
    if filters.task_ids:
        count += 1
    if filters.search_term.strip():
        count += 1
    return count


# query params


def _getlist(params: Any, key: str) -> list[str]:
    if hasattr(params, "getlist"):
        return [str(v) for v in params.getlist(key)]
    value = params.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _first(params: Any, key: str) -> str:
    values = _getlist(params, key)
    return values[0].strip() if values else ""


def _parse_ids(raw_values: Iterable[str]) -> tuple[int, ...]:
    out: list[int] = []
    for raw in raw_values:
        for part in str(raw).split(","):
            part = part.strip()
            if not part:
                continue
            try:
                value = int(part)
            except ValueError:
                continue
            if value > 0 and value not in out:
                out.append(value)
    return tuple(out)


def _parse_date(raw: str) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def filters_from_params(params: Any, today: date, week_start: int = SUNDAY) -> ReportFilters:
    """Parse report query params; anything invalid falls back to the default."""
    preset = _first(params, "range") or RANGE_CURRENT_WEEK
    if preset not in DATE_RANGES:
        preset = RANGE_CURRENT_WEEK

    given_start = _parse_date(_first(params, "start"))
    given_end = _parse_date(_first(params, "end"))

    if preset != RANGE_CUSTOM:
        start, end = resolve_date_range(preset, today, week_start)
        # Dates edited away from the preset bounds make the range custom.
        if (given_start or given_end) and (given_start, given_end) != (start, end):
            preset = RANGE_CUSTOM

    if preset == RANGE_CUSTOM:
        # A missing bound leaves that side of the range open.
        start, end = given_start, given_end
        if start is not None and end is not None and start > end:
            start, end = end, start

    entry_type = _first(params, "type") or TYPE_ALL
    if entry_type not in ENTRY_TYPES:
        entry_type = TYPE_ALL

    return ReportFilters(
        date_range=preset,
        start_date=start,
        end_date=end,
        users=_parse_ids(_getlist(params, "user")),
        entry_type=entry_type,
        project_ids=_parse_ids(_getlist(params, "project")),
        task_ids=_parse_ids(_getlist(params, "task")),
        search_term=_first(params, "q"),
    )


def filters_to_params(filters: ReportFilters) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = [("range", filters.date_range)]
    if filters.date_range == RANGE_CUSTOM:
        if filters.start_date:
            out.append(("start", filters.start_date.isoformat()))
        if filters.end_date:
            out.append(("end", filters.end_date.isoformat()))
    out.extend(("user", str(v)) for v in filters.users)
    if filters.entry_type != TYPE_ALL:
        out.append(("type", filters.entry_type))
    out.extend(("project", str(v)) for v in filters.project_ids)
    out.extend(("task", str(v)) for v in filters.task_ids)
    if filters.search_term:
        out.append(("q", filters.search_term))
    return out


# pipeline


def matches_search(entry: EntryRow, term: str) -> bool:
    needle = (term or "").strip().lower()
    if not needle:
        return True
    for value in (entry.project_name, entry.task_description, entry.user_name, entry.notes):
        if value and needle in value.lower():
            return True
    return False


def _selected_ids(filters: ReportFilters) -> tuple[tuple[int, ...], tuple[int, ...]] | None:
    """Id selections that still apply under the entry type, or None when nothing can match."""
    projects, tasks = filters.project_ids, filters.task_ids
    if filters.entry_type == ENTRY_PROJECT:
        if tasks and not projects:
            return None
        return projects, ()
    if filters.entry_type == ENTRY_TASK:
        if projects and not tasks:
            return None
        return (), tasks
    return projects, tasks


def run_report(db: TimesheetDB, filters: ReportFilters, *, scope_user_id: int | None = None) -> list[EntryRow]:
    """Entries matching ``filters``, newest first.

    ``scope_user_id`` restricts the result to one user's rows, for callers
    without admin rights.
    """
    users = filters.users
    if scope_user_id is not None:
        if users and scope_user_id not in users:
            return []
        users = (scope_user_id,)

    selected = _selected_ids(filters)
    if selected is None:
        return []
    project_ids, task_ids = selected

    entries = db.list_entries(
        user_ids=users,
        from_date=filters.start_date.isoformat() if filters.start_date else None,
        to_date=filters.end_date.isoformat() if filters.end_date else None,
        entry_type=filters.entry_type if filters.entry_type != TYPE_ALL else None,
        project_ids=project_ids,
        task_ids=task_ids,
    )
    if filters.search_term.strip():
        entries = [e for e in entries if matches_search(e, filters.search_term)]
    return entries


def compute_stats(
    entries: Sequence[EntryRow],
    *,
    current_user_id: int | None = None,
    project_count: int = 0,
) -> ReportStats:
    if not entries:
        return ReportStats(project_count=project_count)

    total = math.fsum(e.hours for e in entries)
    personal = math.fsum(e.hours for e in entries if e.user_id == current_user_id)
    days = {e.date for e in entries}

    project_hours: dict[int, float] = defaultdict(float)
    project_names: dict[int, str] = {}
    for e in entries:
        if e.project_id is None:
            continue
        project_hours[e.project_id] += e.hours
        project_names[e.project_id] = e.project_name or "Unknown"

    top = None
    if project_hours:
        top_id = max(project_hours, key=lambda pid: (project_hours[pid], project_names[pid]))
        hours = project_hours[top_id]
        top = TopProject(name=project_names[top_id], hours=hours, share=hours / total if total else 0.0)

    return ReportStats(
        total_hours=total,
        personal_hours=personal,
        entry_count=len(entries),
        contributor_count=len({e.user_id for e in entries}),
        days_worked=len(days),
        avg_hours_per_day=total / len(days),
        active_project_count=len(project_hours),
        project_count=project_count,
        top_project=top,
    )


def group_entries(entries: Iterable[EntryRow], by: str, *, week_start: int = SUNDAY) -> list[Bucket]:
    if by not in GROUPINGS:
        raise ValueError(f"unknown grouping {by!r}")

    hours: dict[str, float] = defaultdict(float)
    counts: dict[str, int] = defaultdict(int)
    labels: dict[str, str] = {}
    for e in entries:
        day = date.fromisoformat(e.date)
        if by == GROUP_DAY:
            key, label = day.isoformat(), day.strftime("%a %Y-%m-%d")
        elif by == GROUP_WEEK:
            start, _ = week_bounds(day, week_start)
            key, label = start.isoformat(), f"Week of {start.isoformat()}"
        elif by == GROUP_MONTH:
            key, label = day.strftime("%Y-%m"), day.strftime("%B %Y")
        elif e.project_id is not None:
            key, label = f"project:{e.project_id}", e.label
        else:
            key, label = f"task:{e.task_id}", e.label
        hours[key] += e.hours
        counts[key] += 1
        labels[key] = label

    buckets = [Bucket(key=k, label=labels[k], hours=hours[k], entry_count=counts[k]) for k in hours]
    if by == GROUP_PROJECT:
        buckets.sort(key=lambda b: (-b.hours, b.label))
    else:
        buckets.sort(key=lambda b: b.key)
    return buckets


def paginate(entries: Sequence[EntryRow], page: int = 1, page_size: int = 10) -> Page:
    if page_size not in PAGE_SIZES:
        page_size = PAGE_SIZES[0]
    total = len(entries)
    total_pages = max(1, math.ceil(total / page_size))
    page = min(max(1, int(page)), total_pages)
    offset = (page - 1) * page_size
    return Page(
        items=list(entries[offset : offset + page_size]),
        page=page,
        page_size=page_size,
        total=total,
        total_pages=total_pages,
    )


def build_report(
    db: TimesheetDB,
    filters: ReportFilters,
    *,
    current_user_id: int | None,
    scope_user_id: int | None = None,
    page: int = 1,
    page_size: int = 10,
    group_by: str = GROUP_DAY,
    week_start: int = SUNDAY,
) -> ReportResult:
    entries = run_report(db, filters, scope_user_id=scope_user_id)
    project_count = len(db.list_projects())
    if group_by not in GROUPINGS:
        group_by = GROUP_DAY
    log.debug("Report matched %d entries (filters=%s)", len(entries), filters)
    return ReportResult(
        filters=filters,
        entries=entries,
        stats=compute_stats(entries, current_user_id=current_user_id, project_count=project_count),
        page=paginate(entries, page, page_size),
        groups=group_entries(entries, group_by, week_start=week_start),
        group_by=group_by,
    )


# export


def fmt_hours(hours: float) -> str:
    return f"{round(hours, 2):g}"


def csv_row(entry: EntryRow) -> list[str]:
    return [
        entry.date,
        entry.user_name,
        "Project" if entry.project_id is not None else "Task",
        entry.label,
        fmt_hours(entry.hours),
        entry.notes or "",
    ]


def entries_to_csv(entries: Iterable[EntryRow]) -> str:
    sio = io.StringIO()
    writer = csv.writer(sio)
    writer.writerow(CSV_COLUMNS)
    for entry in entries:
        writer.writerow(csv_row(entry))
    return sio.getvalue()


def csv_filename(today: date) -> str:
    return f"time-entries-report-{today.isoformat()}.csv"


def entry_to_dict(entry: EntryRow) -> dict[str, Any]:
    data = dict(entry.__dict__)
    data["entry_type"] = entry.entry_type
    data["label"] = entry.label
    return data
