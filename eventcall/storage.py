"""Local cache: schema management, session storage and snapshots."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect, select

from . import database
from .config import settings
from .models import CachedDocument, Meta, PendingRSVP
from .utils import utcnow

STATE_KIND = "state"
AUTOSAVE_KIND = "autosave"


def init_db() -> None:
    upgrade_database(make_backup=False)


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", str(database.engine.url))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the cache schema in-place.

    Returns a list of applied actions.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(database.engine)
    has_alembic = inspector.has_table("alembic_version")
    has_meta = inspector.has_table("meta")
    config = _alembic_config()

    if not has_alembic and not has_meta:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables were created outside Alembic: baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")
    return actions


def get_meta(key: str) -> str | None:
    with database.get_session() as session:
        meta = session.get(Meta, key)
        return meta.value if meta else None


def set_meta(key: str, value: str) -> None:
    with database.get_session() as session:
        session.merge(Meta(key=key, value=value, updated_at=utcnow()))


def delete_meta(key: str) -> None:
    with database.get_session() as session:
        meta = session.get(Meta, key)
        if meta is not None:
            session.delete(meta)


class MetaSessionStore:
    """Session storage backed by the ``meta`` table."""

    def get(self, key: str) -> str | None:
        return get_meta(key)

    def set(self, key: str, value: str) -> None:
        set_meta(key, value)


def save_document(kind: str, key: str, payload: Any) -> None:
    with database.get_session() as session:
        session.merge(
            CachedDocument(
                kind=kind, key=key, payload=json.dumps(payload), updated_at=utcnow()
            )
        )


def load_document(kind: str, key: str) -> Any | None:
    with database.get_session() as session:
        document = session.get(CachedDocument, (kind, key))
        return json.loads(document.payload) if document else None


def delete_document(kind: str, key: str) -> None:
    with database.get_session() as session:
        document = session.get(CachedDocument, (kind, key))
        if document is not None:
            session.delete(document)


def save_autosave(form_key: str, data: dict[str, Any]) -> None:
    save_document(AUTOSAVE_KIND, form_key, data)


def load_autosave(form_key: str) -> dict[str, Any] | None:
    return load_document(AUTOSAVE_KIND, form_key)


def clear_autosave(form_key: str) -> None:
    delete_document(AUTOSAVE_KIND, form_key)


def save_state_snapshot(snapshot: dict[str, Any], *, key: str = "app") -> None:
    save_document(STATE_KIND, key, snapshot)


def load_state_snapshot(*, key: str = "app") -> dict[str, Any] | None:
    return load_document(STATE_KIND, key)


def save_session_user(user: dict[str, Any]) -> None:
    set_meta(settings.session_user_key, json.dumps(user))


def load_session_user() -> dict[str, Any] | None:
    raw = get_meta(settings.session_user_key)
    return json.loads(raw) if raw else None


def clear_session_user() -> None:
    delete_meta(settings.session_user_key)


def queue_pending_rsvp(rsvp: dict[str, Any], error: str) -> str:
    """Keep ``rsvp`` for a later retry; one pending entry per event and email."""
    event_id = str(rsvp.get("eventId", ""))
    email = str(rsvp.get("email", "")).lower()
    with database.get_session() as session:
        existing = session.scalars(
            select(PendingRSVP).where(
                PendingRSVP.event_id == event_id, PendingRSVP.email == email
            )
        ).first()
        if existing is None:
            existing = PendingRSVP(event_id=event_id, email=email, payload="")
            session.add(existing)
        existing.payload = json.dumps(rsvp)
        existing.last_error = error
        existing.updated_at = utcnow()
        session.flush()
        return existing.id


def list_pending_rsvps() -> list[tuple[str, dict[str, Any]]]:
    with database.get_session() as session:
        rows = session.scalars(select(PendingRSVP).order_by(PendingRSVP.created_at)).all()
        return [(row.id, json.loads(row.payload)) for row in rows]


def remove_pending_rsvp(pending_id: str) -> None:
    with database.get_session() as session:
        row = session.get(PendingRSVP, pending_id)
        if row is not None:
            session.delete(row)
