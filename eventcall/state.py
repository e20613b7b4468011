"""Explicit application state shared by the client components."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .schemas import RSVP, Event, User


def dedupe_by_email(rsvps: Iterable[RSVP]) -> list[RSVP]:
    """Keep the most recent RSVP per email, in first-seen order."""
    latest: dict[str, RSVP] = {}
    for rsvp in rsvps:
        current = latest.get(rsvp.email)
        if current is None or rsvp.recency >= current.recency:
            latest[rsvp.email] = rsvp
    return list(latest.values())


@dataclass
class AppState:
    """Events, responses and the signed-in user.

    Whichever flow finishes last wins; GitHub's sha precondition is the only
    guard against concurrent edits.
    """

    events: dict[str, Event] = field(default_factory=dict)
    responses: dict[str, list[RSVP]] = field(default_factory=dict)
    current_user: User | None = None

    def merge_events(self, events: Iterable[Event]) -> None:
        for event in events:
            self.events[event.id] = event

    def remove_event(self, event_id: str) -> None:
        self.events.pop(event_id, None)
        self.responses.pop(event_id, None)

    def set_responses(self, event_id: str, rsvps: Iterable[RSVP]) -> None:
        self.responses[event_id] = dedupe_by_email(rsvps)

    def find_rsvp(self, event_id: str, email: str) -> RSVP | None:
        email = email.strip().lower()
        for rsvp in self.responses.get(event_id, []):
            if rsvp.email == email:
                return rsvp
        return None

    def record_rsvp(self, rsvp: RSVP) -> None:
        existing = self.responses.setdefault(rsvp.event_id, [])
        for index, current in enumerate(existing):
            if current.email == rsvp.email:
                existing[index] = rsvp
                return
        existing.append(rsvp)

    def remove_rsvp(self, event_id: str, email: str) -> bool:
        email = email.strip().lower()
        existing = self.responses.get(event_id, [])
        kept = [rsvp for rsvp in existing if rsvp.email != email]
        self.responses[event_id] = kept
        return len(kept) != len(existing)

    def headcount(self, event_id: str) -> int:
        return sum(rsvp.headcount for rsvp in self.responses.get(event_id, []))

    def snapshot(self) -> dict[str, Any]:
        return {
            "events": [event.to_json() for event in self.events.values()],
            "responses": {
                event_id: [rsvp.to_json() for rsvp in rsvps]
                for event_id, rsvps in self.responses.items()
            },
            "currentUser": self.current_user.to_json() if self.current_user else None,
        }

    @classmethod
    def restore(cls, snapshot: dict[str, Any] | None) -> AppState:
        state = cls()
        if not snapshot:
            return state
        state.merge_events(Event.model_validate(item) for item in snapshot.get("events", []))
        for event_id, rsvps in (snapshot.get("responses") or {}).items():
            state.responses[event_id] = [RSVP.model_validate(item) for item in rsvps]
        if snapshot.get("currentUser"):
            state.current_user = User.model_validate(snapshot["currentUser"])
        return state
