"""Backend automation run by the repository_dispatch workflow.

``WorkflowProcessor.handle`` receives the dispatched ``event_type`` and
``client_payload`` and performs the write the client asked for. Auth actions
answer through an issue titled ``AUTH_RESPONSE::<client_id>``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .content import GitHubContentStore
from .correlator import response_title
from .errors import EventCallError, ValidationError
from .events import EventRepository, event_path
from .github import GitHubClient
from .rsvp import aggregate_path, build_rsvp, save_event_rsvps, unwrap_record
from .schemas import Event, Registration, parse_document
from .users import UserStore

logger = logging.getLogger(__name__)

AUTH_RESPONSE_LABELS = ("auth-response", "automated")


def load_dispatch_event(path: Path) -> tuple[str, dict[str, Any]]:
    """Read ``$GITHUB_EVENT_PATH`` and return ``(action, client_payload)``."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    action = data.get("action") or data.get("event_type")
    if not action:
        raise ValidationError("Dispatch event has no action")
    return str(action), dict(data.get("client_payload") or {})


class WorkflowProcessor:
    def __init__(
        self,
        content: GitHubContentStore,
        issues: GitHubClient,
        users: UserStore,
        events: EventRepository,
    ) -> None:
        self.content = content
        self.issues = issues
        self.users = users
        self.events = events
        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "submit_rsvp": self.submit_rsvp,
            "create_event": self.save_event,
            "update_event": self.save_event,
            "delete_event": self.delete_event,
            "login_user": self.login_user,
            "register_user": self.register_user,
            "update_profile": self.update_profile,
        }

    def handle(self, event_type: str, client_payload: dict[str, Any]) -> dict[str, Any]:
        handler = self._handlers.get(event_type)
        if handler is None:
            raise ValidationError(f"Unsupported workflow action: {event_type}")
        payload = unwrap_record(client_payload)
        logger.info("Handling %s", event_type)
        return handler(payload)

    def submit_rsvp(self, payload: dict[str, Any]) -> dict[str, Any]:
        rsvp = build_rsvp(payload)
        record = rsvp.to_json()
        save_event_rsvps(
            self.content,
            rsvp.event_id,
            [record],
            message=f"RSVP response: {rsvp.name} for event {rsvp.event_id}",
        )
        return {"success": True, "path": aggregate_path(rsvp.event_id), "rsvpId": rsvp.rsvp_id}

    def save_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        event = parse_document(Event, payload)
        self.events.save_event_file(event)
        return {"success": True, "path": event_path(event.id)}

    def delete_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        event_id = str(payload.get("id") or payload.get("eventId") or "")
        if not event_id:
            raise ValidationError("delete_event needs an event id")
        return {"success": True, "deleted": self.events.delete_event(event_id)}

    def _respond(
        self, payload: dict[str, Any], action: str, work: Callable[[], dict[str, Any]]
    ) -> dict[str, Any]:
        client_id = payload.get("client_id")
        if not client_id:
            raise ValidationError(f"{action} needs a client_id")
        try:
            result = {"success": True, "action": action, **work()}
        except EventCallError as exc:
            logger.warning("%s failed for %s: %s", action, client_id, exc)
            result = {"success": False, "action": action, "error": str(exc)}
        self.issues.create_issue(
            response_title(str(client_id)),
            json.dumps(result),
            AUTH_RESPONSE_LABELS,
        )
        return result

    def login_user(self, payload: dict[str, Any]) -> dict[str, Any]:
        def work() -> dict[str, Any]:
            user = self.users.authenticate(
                str(payload.get("username") or ""), str(payload.get("password") or "")
            )
            return {
                "user": user.public(),
                "userId": user.id,
                "username": user.username,
                "message": "Login successful",
            }

        return self._respond(payload, "login_user", work)

    def register_user(self, payload: dict[str, Any]) -> dict[str, Any]:
        def work() -> dict[str, Any]:
            fields = {key: payload.get(key) or "" for key in Registration.model_fields}
            user = self.users.register(Registration(**fields))
            return {
                "user": user.public(),
                "userId": user.id,
                "username": user.username,
                "message": "Registration successful",
            }

        return self._respond(payload, "register_user", work)

    def update_profile(self, payload: dict[str, Any]) -> dict[str, Any]:
        def work() -> dict[str, Any]:
            user = self.users.update_profile(
                str(payload.get("username") or ""), dict(payload.get("updates") or {})
            )
            return {"user": user.public(), "message": "Profile updated"}

        return self._respond(payload, "update_profile", work)
