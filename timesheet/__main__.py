from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

from timesheet.config import ConfigError, load_settings, resolve_data_dir
from timesheet.forms import MIN_PASSWORD


def _open_db(data_dir: Path):
    from timesheet.db import TimesheetDB

    return TimesheetDB(data_dir / "timesheet.sqlite3")


def _set_password(*, data_dir: Path, email: str) -> int:
    address = str(email or "").strip().lower()
    if not address:
        print("--email is required with --set-password")
        return 1

    first = getpass.getpass("New password: ")
    second = getpass.getpass("Confirm password: ")
    if first != second:
        print("Passwords don't match.")
        return 1

    if len(first) < MIN_PASSWORD:
        print(f"Password must be at least {MIN_PASSWORD} characters.")
        return 1

    db = _open_db(data_dir)
    try:
        if db.get_user_by_email(address) is None:
            print(f"User not found: {address}")
            return 1
        if not db.set_user_password(email=address, new_password=first):
            print("Password update failed.")
            return 1
    finally:
        db.close()

    print(f"Password updated for '{address}'.")
    return 0


def _promote(*, data_dir: Path, email: str) -> int:
    from timesheet.db import ROLE_ADMIN

    address = str(email or "").strip().lower()
    db = _open_db(data_dir)
    try:
        user = db.get_user_by_email(address)
        if user is None:
            print(f"User not found: {address}")
            return 1
        db.update_user(user.id, role=ROLE_ADMIN)
    finally:
        db.close()

    print(f"'{address}' is now an admin.")
    return 0


def _dump_json(*, data_dir: Path) -> int:
    db = _open_db(data_dir)
    try:
        sys.stdout.write(db.dump_json() + "\n")
    finally:
        db.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="timesheet")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8010)
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--data-dir", type=Path, help="Defaults to the data_dir the server settings resolve to")
    parser.add_argument("--set-password", action="store_true", help="Update the password of an existing user")
    parser.add_argument("--email", default="")
    parser.add_argument("--promote", metavar="EMAIL", help="Give an existing user the admin role")
    parser.add_argument("--dump-json", action="store_true", help="Print every table as JSON and exit")
    args = parser.parse_args(argv)

    if args.data_dir is not None:
        data_dir = resolve_data_dir(args.data_dir)
    else:
        try:
            data_dir = load_settings().data_dir
        except ConfigError as e:
            print(f"Config error: {e}")
            return 1

    if args.set_password:
        return _set_password(data_dir=data_dir, email=args.email)
    if args.promote:
        return _promote(data_dir=data_dir, email=args.promote)
    if args.dump_json:
        return _dump_json(data_dir=data_dir)

    os.environ["TIMESHEET_DATA_DIR"] = str(data_dir)

    import uvicorn

    uvicorn.run("timesheet.app:app", host=args.host, port=args.port, reload=bool(args.reload))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
