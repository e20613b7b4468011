"""Events and their responses as stored in the data repository."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as SchemaError

from .content import GitHubContentStore
from .dispatch import DispatchResult, WorkflowDispatchBridge
from .errors import ValidationError
from .rsvp import iter_rsvp_records
from .schemas import RSVP, Event, User
from .state import AppState, dedupe_by_email
from .utils import epoch_ms

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500
MAX_LOCATION_LENGTH = 200


def event_path(event_id: str) -> str:
    return f"events/{event_id}.json"


def validate_event(event: Event) -> None:
    missing = [name for name in ("title", "date", "time") if not getattr(event, name).strip()]
    if missing:
        raise ValidationError(f"Missing required event fields: {', '.join(missing)}")


class EventRepository:
    def __init__(
        self,
        content: GitHubContentStore,
        bridge: WorkflowDispatchBridge,
        state: AppState,
    ) -> None:
        self.content = content
        self.bridge = bridge
        self.state = state

    def _prepare(self, event: Event, manager: User | None) -> Event:
        validate_event(event)
        now = epoch_ms()
        updates: dict[str, Any] = {
            "description": event.description[:MAX_DESCRIPTION_LENGTH],
            "location": event.location[:MAX_LOCATION_LENGTH],
            "last_modified": now,
        }
        if event.created is None:
            updates["created"] = now
        if manager is not None and not event.created_by:
            updates["created_by"] = manager.email or manager.username
            updates["created_by_name"] = manager.name or manager.username
        prepared = event.model_copy(update=updates)
        if manager is not None:
            extra = prepared.model_extra
            if extra is not None:
                extra.setdefault("createdByUsername", manager.username)
        return prepared

    def create_event(self, event: Event, manager: User | None = None) -> DispatchResult:
        prepared = self._prepare(event, manager)
        payload = prepared.to_json()
        payload["customQuestionsCount"] = len(prepared.custom_questions)
        result = self.bridge.dispatch("create_event", payload)
        self.state.merge_events([prepared])
        return result

    def update_event(self, event: Event, manager: User | None = None) -> DispatchResult:
        prepared = self._prepare(event, manager)
        result = self.bridge.dispatch("update_event", prepared.to_json())
        self.state.merge_events([prepared])
        return result

    def save_event_file(self, event: Event) -> None:
        """Write ``events/<id>.json`` directly (used by the backend workflow)."""
        path = event_path(event.id)
        current = self.content.get_file(path)
        verb = "Update" if current else "Create"
        self.content.put_file(
            path,
            event.to_json(),
            f"{verb} event: {event.title}",
            sha=current.sha if current else None,
        )

    def load_events(self, owner: User | None = None) -> list[Event]:
        events = []
        for path, data in self.content.load_json_files("events/").items():
            try:
                event = Event.model_validate(data)
            except SchemaError as exc:
                logger.warning("Skipping invalid event %s: %s", path, exc)
                continue
            if owner is None or event.owned_by(owner.username, owner.email):
                events.append(event)
        self.state.merge_events(events)
        return events

    def load_responses(self, event_ids: set[str] | None = None) -> dict[str, list[RSVP]]:
        """Read both RSVP layouts and keep one response per email."""
        collected: dict[str, list[RSVP]] = {}
        files = self.content.load_json_files("rsvps/")
        for path, event_id, record in iter_rsvp_records(files):
            if event_ids is not None and event_id not in event_ids:
                continue
            try:
                collected.setdefault(event_id, []).append(RSVP.model_validate(record))
            except SchemaError as exc:
                logger.warning("Skipping invalid RSVP in %s: %s", path, exc)
        responses = {event_id: dedupe_by_email(rsvps) for event_id, rsvps in collected.items()}
        for event_id, rsvps in responses.items():
            self.state.set_responses(event_id, rsvps)
        return responses

    def delete_event(self, event_id: str) -> list[str]:
        """Delete the event file and every RSVP file that belongs to it."""
        deleted = []
        message = f"Delete event: {event_id}"
        for path in (event_path(event_id), f"rsvps/{event_id}.json"):
            if self.content.delete_file(path, message):
                deleted.append(path)
        for entry in self.content.list_files_under_prefix(f"rsvps/{event_id}/"):
            if self.content.delete_file(entry.path, message):
                deleted.append(entry.path)
        self.state.remove_event(event_id)
        return deleted
