"""Admin authorization.

Every admin gate in the app (request interception, ``/api/check-admin``,
``/api/admin/*`` and the admin pages) goes through :class:`AdminAuthorizer`.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from timesheet.db import ROLE_ADMIN, TimesheetDB, UserRow

log = logging.getLogger("timesheet.authz")


@dataclass(frozen=True)
class AdminCheck:
    is_admin: bool
    status: int
    error: str = ""
    user: UserRow | None = None


class RoleCache:
    """Bounded LRU of user id -> role with per-entry expiry.

    A ttl of 0 disables caching.
    """

    def __init__(self, ttl: float, *, maxsize: int = 1024, clock: Callable[[], float] = time.monotonic) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        if ttl < 0:
            raise ValueError("ttl must be >= 0")
        self._ttl = ttl
        self._maxsize = maxsize
        self._clock = clock
        self._data: OrderedDict[int, tuple[UserRow, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, user_id: int) -> UserRow | None:
        with self._lock:
            entry = self._data.get(user_id)
            if entry is None:
                return None
            user, expires_at = entry
            if self._clock() >= expires_at:
                del self._data[user_id]
                return None
            self._data.move_to_end(user_id)
            return user

    def put(self, user_id: int, user: UserRow) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            if user_id in self._data:
                del self._data[user_id]
            elif len(self._data) >= self._maxsize:
                self._data.popitem(last=False)
            self._data[user_id] = (user, self._clock() + self._ttl)

    def pop(self, user_id: int) -> None:
        with self._lock:
            self._data.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class AdminAuthorizer:
    def __init__(self, db: TimesheetDB, *, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._db = db
        self._cache = RoleCache(ttl, clock=clock)

    def _lookup(self, user_id: int) -> UserRow | None:
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached
        user = self._db.get_user(user_id)
        if user is not None:
            self._cache.put(user_id, user)
        return user

    def check(self, user_id: int | None) -> AdminCheck:
        if user_id is None:
            return AdminCheck(is_admin=False, status=401, error="User not authenticated")

        try:
            user = self._lookup(user_id)
        except sqlite3.Error:
            log.exception("Role lookup failed for user_id=%s", user_id)
            return AdminCheck(is_admin=False, status=500, error="Error checking user role")

        if user is None:
            return AdminCheck(is_admin=False, status=401, error="User not found")
        if user.role != ROLE_ADMIN:
            log.warning("Admin access denied for %s (role=%s)", user.email, user.role)
            return AdminCheck(is_admin=False, status=403, error="User does not have admin privileges", user=user)
        return AdminCheck(is_admin=True, status=200, user=user)

    def invalidate(self, user_id: int) -> None:
        self._cache.pop(int(user_id))

    def clear(self) -> None:
        self._cache.clear()
