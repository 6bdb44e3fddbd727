from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

CONFIG_PATH_ENV = "TIMESHEET_CONFIG"

WEEK_STARTS = {"sunday": 6, "monday": 0}
PAGE_SIZES = (10, 20, 50, 100)


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    secret_key: str
    https_only: bool
    allowed_hosts: list[str]
    trusted_proxies: list[str] | str
    allow_registration: bool
    api_key: str
    admin_cache_ttl: float
    week_start: str
    page_size: int
    admin_email: str
    admin_password: str
    log_level: str

    @property
    def db_path(self) -> Path:
        return self.data_dir / "timesheet.sqlite3"

    @property
    def week_start_weekday(self) -> int:
        return WEEK_STARTS[self.week_start]


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _split_list(raw: Any) -> list[str]:
    if isinstance(raw, (list, tuple)):
        return [str(x).strip() for x in raw if str(x).strip()]
    return [p.strip() for p in str(raw or "").split(",") if p.strip()]


def parse_allowed_hosts(raw: Any) -> list[str]:
    out = [h for h in _split_list(raw) if h != "*"]
    if not out:
        return ["localhost", "127.0.0.1"]
    return out


def parse_trusted_proxies(raw: Any) -> list[str] | str:
    if str(raw or "").strip() == "*":
        return "*"
    out = _split_list(raw)
    return out if out else ["127.0.0.1"]


def resolve_data_dir(raw: Any, *, base: Path | None = None) -> Path:
    p = Path(str(raw))
    if not p.is_absolute():
        p = ((base or Path.cwd()) / p).resolve()
    return p


def load_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping (YAML dict).")
    return raw


def load_settings(*, env: dict[str, str] | None = None, dotenv: bool = True) -> Settings:
    """Build settings from env vars, then an optional YAML file, then defaults."""
    if env is None:
        if dotenv:
            load_dotenv()
        env = dict(os.environ)

    file_cfg: dict[str, Any] = {}
    config_base: Path | None = None
    config_path = (env.get(CONFIG_PATH_ENV, "") or "").strip()
    if config_path:
        path = Path(config_path)
        file_cfg = load_yaml_config(path)
        config_base = path.resolve().parent

    def pick(key: str, default: Any) -> Any:
        raw = env.get(f"TIMESHEET_{key.upper()}")
        if raw is not None and str(raw).strip() != "":
            return raw
        if key in file_cfg and file_cfg[key] is not None:
            return file_cfg[key]
        return default

    data_dir_raw = env.get("TIMESHEET_DATA_DIR") or None
    if data_dir_raw:
        data_dir = resolve_data_dir(data_dir_raw)
    else:
        data_dir = resolve_data_dir(file_cfg.get("data_dir") or ".timesheet", base=config_base)

    week_start = str(pick("week_start", "sunday")).strip().lower()
    if week_start not in WEEK_STARTS:
        raise ConfigError(f"week_start must be one of {sorted(WEEK_STARTS)}, got {week_start!r}")

    try:
        ttl = float(pick("admin_cache_ttl", 30))
    except (TypeError, ValueError) as e:
        raise ConfigError("admin_cache_ttl must be a number.") from e
    if ttl < 0:
        raise ConfigError("admin_cache_ttl must be >= 0.")

    try:
        page_size = int(pick("page_size", 10))
    except (TypeError, ValueError) as e:
        raise ConfigError("page_size must be an integer.") from e
    if page_size not in PAGE_SIZES:
        raise ConfigError(f"page_size must be one of {list(PAGE_SIZES)}.")

    return Settings(
        data_dir=data_dir,
        secret_key=str(pick("secret_key", "")).strip(),
        https_only=_as_bool(pick("https_only", False)),
        allowed_hosts=parse_allowed_hosts(pick("allowed_hosts", "localhost,127.0.0.1")),
        trusted_proxies=parse_trusted_proxies(pick("trusted_proxies", "127.0.0.1")),
        allow_registration=_as_bool(pick("allow_registration", True)),
        api_key=str(pick("api_key", "")).strip(),
        admin_cache_ttl=ttl,
        week_start=week_start,
        page_size=page_size,
        admin_email=str(pick("admin_email", "admin@example.com")).strip().lower(),
        admin_password=str(pick("admin_password", "admin1234")).strip(),
        log_level=str(pick("log_level", "INFO")).strip().upper() or "INFO",
    )
