"""Global configuration for EventCall."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from .utils import hostname_of, parse_timestamp

DEFAULTS: dict[str, Any] = {
    "github_owner": "",
    "github_repo": "EventCall",
    "data_repo": "EventCall-Data",
    "github_branch": "main",
    "github_api_base": "https://api.github.com",
    "github_token": "",
    "github_tokens": "",
    "token_expires_at": "",
    "dispatch_url": "",
    "force_proxy": False,
    "client_origin": "",
    "force_backend_in_dev": False,
    "auth_mode": "workflow",
    "simple_users": "",
    "poll_timeout_seconds": 30.0,
    "poll_interval_seconds": 2.0,
    "retry_max_attempts": 3,
    "retry_base_delay": 1.0,
    "retry_jitter": True,
    "request_timeout_seconds": 15.0,
    "batch_concurrency": 4,
    "csrf_shared_secret": "",
    "csrf_ttl_minutes": 15,
    "allowed_origins": "",
    "rsvp_sync_minutes": 5,
    "enable_scheduler": True,
    "app_host": "0.0.0.0",
    "app_port": 10000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "github_owner": str,
    "github_repo": str,
    "data_repo": str,
    "github_branch": str,
    "github_api_base": str,
    "github_token": str,
    "github_tokens": str,
    "token_expires_at": str,
    "dispatch_url": str,
    "force_proxy": bool,
    "client_origin": str,
    "force_backend_in_dev": bool,
    "auth_mode": str,
    "simple_users": str,
    "poll_timeout_seconds": float,
    "poll_interval_seconds": float,
    "retry_max_attempts": int,
    "retry_base_delay": float,
    "retry_jitter": bool,
    "request_timeout_seconds": float,
    "batch_concurrency": int,
    "csrf_shared_secret": str,
    "csrf_ttl_minutes": int,
    "allowed_origins": str,
    "rsvp_sync_minutes": int,
    "enable_scheduler": bool,
    "app_host": str,
    "app_port": int,
}

# Names the proxy service has always been deployed with.
ENV_ALIASES: dict[str, tuple[str, ...]] = {
    "app_port": ("PORT",),
    "github_token": ("GITHUB_TOKEN",),
    "github_owner": ("REPO_OWNER",),
    "github_repo": ("REPO_NAME",),
    "allowed_origins": ("ALLOWED_ORIGINS", "ALLOWED_ORIGIN"),
    "csrf_shared_secret": ("CSRF_SHARED_SECRET",),
}

AUTH_MODES = ("workflow", "proxy", "simple", "demo")
SECRET_KEYS = frozenset({"github_token", "github_tokens", "csrf_shared_secret"})


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    github_owner: str
    github_repo: str
    data_repo: str
    github_branch: str
    github_api_base: str
    github_token: str
    github_tokens: str
    token_expires_at: str
    dispatch_url: str
    force_proxy: bool
    client_origin: str
    force_backend_in_dev: bool
    auth_mode: str
    simple_users: str
    poll_timeout_seconds: float
    poll_interval_seconds: float
    retry_max_attempts: int
    retry_base_delay: float
    retry_jitter: bool
    request_timeout_seconds: float
    batch_concurrency: int
    csrf_shared_secret: str
    csrf_ttl_minutes: int
    allowed_origins: str
    rsvp_sync_minutes: int
    enable_scheduler: bool
    app_host: str
    app_port: int
    token_index_key: str
    session_user_key: str
    config_path: Path

    @property
    def token_list(self) -> tuple[str, ...]:
        return tuple(
            token.strip() for token in self.github_tokens.split(",") if token.strip()
        )

    @property
    def token_expiry(self) -> datetime | None:
        return parse_timestamp(self.token_expires_at)

    @property
    def allowed_origin_list(self) -> tuple[str, ...]:
        return tuple(
            origin.strip().rstrip("/")
            for origin in self.allowed_origins.split(",")
            if origin.strip()
        )

    @property
    def client_hostname(self) -> str:
        return hostname_of(self.client_origin)

    @property
    def simple_user_hashes(self) -> dict[str, str]:
        """Parse ``username:bcrypt-hash`` pairs separated by commas."""
        users: dict[str, str] = {}
        for entry in self.simple_users.split(","):
            username, sep, password_hash = entry.strip().partition(":")
            if sep and username:
                users[username.strip().lower()] = password_hash.strip()
        return users

    @property
    def csrf_ttl(self) -> timedelta:
        return timedelta(minutes=self.csrf_ttl_minutes)


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"EVENTCALL_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    for alias in ENV_ALIASES.get(key, ()):
        if alias in os.environ:
            return _cast_value(key, os.environ[alias])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = Path(database_path) if database_path else resolved_data / "eventcall.db"
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("EVENTCALL_BASE_DIR", Path.cwd()))
    env_config = os.getenv("EVENTCALL_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "eventcall.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("EVENTCALL_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("EVENTCALL_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    if layered["auth_mode"] not in AUTH_MODES:
        raise ValueError(
            f"auth_mode must be one of {', '.join(AUTH_MODES)}, "
            f"got {layered['auth_mode']!r}"
        )

    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        token_index_key="github_token_index",
        session_user_key="session_user",
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings, *, reveal_secrets: bool = False) -> dict[str, Any]:
    values: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        value = getattr(settings, key)
        if key in SECRET_KEYS and value and not reveal_secrets:
            value = "********"
        values[key] = value
    return values


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# EventCall configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
