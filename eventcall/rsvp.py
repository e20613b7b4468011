"""RSVP validation, the three-tier submission pipeline and issue sync."""

from __future__ import annotations

import json
import logging
import re
import secrets
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

import httpx
from jinja2 import Environment, PackageLoader

from .content import CommitResult, GitHubContentStore
from .dispatch import WorkflowDispatchBridge
from .errors import DispatchError, EventCallError, SubmissionFailed, ValidationError
from .github import GitHubClient
from .schemas import RSVP, Event, parse_document
from .state import AppState
from .utils import epoch_ms, iso_now, new_id, to_base36

logger = logging.getLogger(__name__)

MISSING_FIELDS_MESSAGE = "Missing required fields: eventId, name, or email"
INVALID_EMAIL_MESSAGE = "Invalid email format"
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-\.]{2,50}$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{0,15}$")
PHONE_SEPARATORS = re.compile(r"[\s\-\(\)\.]")
ISSUE_JSON_PATTERN = re.compile(r"```json\s*([\s\S]*?)\s*```")
MAX_GUESTS = 10
DEFAULT_USER_AGENT = "eventcall-python"

_templates = Environment(
    loader=PackageLoader("eventcall", "templates"),
    autoescape=False,
    keep_trailing_newline=True,
)


def rsvp_path(event_id: str, rsvp_id: str) -> str:
    return f"rsvps/{event_id}/{rsvp_id}.json"


def aggregate_path(event_id: str) -> str:
    return f"rsvps/{event_id}.json"


def validate_submission(raw: dict[str, Any]) -> None:
    """Reject a submission before any network call is attempted."""
    required = [str(raw.get(key) or "").strip() for key in ("eventId", "name", "email")]
    if not all(required):
        raise ValidationError(MISSING_FIELDS_MESSAGE)
    if not EMAIL_PATTERN.match(required[2]):
        raise ValidationError(INVALID_EMAIL_MESSAGE)


def validate_rsvp_form(raw: dict[str, Any], event: Event | None = None) -> list[str]:
    errors: list[str] = []
    if raw.get("attending") is None:
        errors.append("Please select whether you are attending")
    name = str(raw.get("name") or "").strip()
    if not NAME_PATTERN.match(name):
        errors.append("Name must be 2-50 letters, spaces, hyphens or periods")
    email = str(raw.get("email") or "").strip()
    if not EMAIL_PATTERN.match(email):
        errors.append(INVALID_EMAIL_MESSAGE)
    phone = str(raw.get("phone") or "").strip()
    if phone and not PHONE_PATTERN.match(PHONE_SEPARATORS.sub("", phone)):
        errors.append("Please enter a valid phone number")
    try:
        guests = int(raw.get("guestCount") or 0)
    except (TypeError, ValueError):
        errors.append("Guest count must be a number")
    else:
        if not 0 <= guests <= MAX_GUESTS:
            errors.append(f"Guest count must be between 0 and {MAX_GUESTS}")
        elif event is not None and guests and not event.allow_guests:
            errors.append("This event does not allow additional guests")
    if event is not None and raw.get("attending"):
        answers = raw.get("customAnswers") or {}
        for question in event.custom_questions:
            if question.required and not str(answers.get(question.id) or "").strip():
                errors.append(f"Please answer: {question.question}")
    return errors


def validation_hash(event_id: str, email: str, timestamp: int | str) -> str:
    """32-bit rolling hash of ``eventId-email-timestamp`` in base 36."""
    units = f"{event_id}-{email}-{timestamp}".encode("utf-16-le")
    value = 0
    for index in range(0, len(units), 2):
        code = units[index] | (units[index + 1] << 8)
        value = ((value << 5) - value + code) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return to_base36(abs(value))


def build_rsvp(
    raw: dict[str, Any], *, now_ms: int | None = None, user_agent: str | None = None
) -> RSVP:
    validate_submission(raw)
    now = now_ms or epoch_ms()
    event_id = str(raw["eventId"]).strip()
    email = str(raw["email"]).strip().lower()
    try:
        guest_count = int(raw.get("guestCount") or 0)
    except (TypeError, ValueError):
        raise ValidationError("Guest count must be a number") from None
    if guest_count < 0:
        raise ValidationError("Guest count cannot be negative")
    timestamp = raw.get("timestamp") or now
    return parse_document(
        RSVP,
        {
            **raw,
            "eventId": event_id,
            "rsvpId": raw.get("rsvpId") or new_id(),
            "name": str(raw["name"]).strip(),
            "email": email,
            "phone": str(raw.get("phone") or "").strip(),
            "guestCount": guest_count,
            "timestamp": timestamp,
            "validationHash": validation_hash(event_id, email, timestamp),
            "submissionMethod": raw.get("submissionMethod") or "secure_backend",
            "userAgent": user_agent or raw.get("userAgent") or DEFAULT_USER_AGENT,
            "editToken": raw.get("editToken") or secrets.token_urlsafe(16),
            "checkInToken": raw.get("checkInToken") or secrets.token_urlsafe(16),
            "isUpdate": bool(raw.get("isUpdate")),
            "lastModified": now,
        },
    )


def headcount(rsvps: Iterable[RSVP]) -> int:
    return sum(rsvp.headcount for rsvp in rsvps)


def unwrap_record(item: Any) -> dict[str, Any]:
    """Flatten the ``{"data": {...}}`` envelope dispatched records arrive in."""
    if not isinstance(item, dict):
        return {}
    if isinstance(item.get("data"), dict):
        flattened = dict(item["data"])
        for key in ("sentAt", "source"):
            if key in item:
                flattened.setdefault(key, item[key])
        return flattened
    return item


def event_id_from_rsvp_path(path: str) -> str | None:
    """``rsvps/<id>.json`` and ``rsvps/<id>/<rsvpId>.json`` both belong to ``<id>``."""
    parts = path.split("/")
    if len(parts) == 2:
        return parts[1].removesuffix(".json")
    if len(parts) == 3:
        return parts[1]
    return None


def iter_rsvp_records(files: dict[str, Any]) -> Iterator[tuple[str, str, dict[str, Any]]]:
    """Yield ``(path, event_id, record)`` for every entry in both RSVP layouts."""
    for path, data in files.items():
        event_id = event_id_from_rsvp_path(path)
        if event_id is None:
            continue
        for item in data if isinstance(data, list) else [data]:
            record = dict(unwrap_record(item))
            record.setdefault("eventId", event_id)
            yield path, event_id, record


def merge_rsvps(
    existing: Iterable[dict[str, Any]], incoming: Iterable[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Replace entries whose email matches case-insensitively, append the rest.

    Entries may be stored bare or inside a ``{"data": {...}}`` envelope. A
    matching entry is replaced whole and any further entries for the same
    email are dropped, so each email ends up with exactly one entry.
    """
    merged = [dict(item) for item in existing]
    for record in incoming:
        email = str(unwrap_record(record).get("email", "")).strip().lower()
        if not email:
            merged.append(dict(record))
            continue
        matches = [
            index
            for index, current in enumerate(merged)
            if str(unwrap_record(current).get("email", "")).strip().lower() == email
        ]
        if not matches:
            merged.append(dict(record))
            continue
        merged[matches[0]] = dict(record)
        for index in reversed(matches[1:]):
            del merged[index]
    return merged


def extract_rsvp_from_issue(issue: dict[str, Any]) -> dict[str, Any] | None:
    match = ISSUE_JSON_PATTERN.search(issue.get("body") or "")
    if not match:
        return None
    try:
        record = json.loads(match.group(1))
    except ValueError:
        logger.warning("Issue #%s has an unreadable RSVP block", issue.get("number"))
        return None
    if not isinstance(record, dict):
        return None
    record["issueNumber"] = issue.get("number")
    record["issueUrl"] = issue.get("html_url")
    record["processedAt"] = iso_now()
    return record


def issue_title(rsvp: RSVP) -> str:
    return f"RSVP: {rsvp.name} - {rsvp.event_id}"


def render_issue_body(rsvp: RSVP) -> str:
    template = _templates.get_template("rsvp_issue.md.j2")
    data = rsvp.to_json()
    return template.render(
        rsvp=data,
        payload=json.dumps(data, indent=2, ensure_ascii=False),
        submitted_at=iso_now(),
    )


@dataclass
class SubmissionResult:
    method: str
    rsvp: RSVP
    local: bool = False
    detail: dict[str, Any] = field(default_factory=dict)


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, DispatchError) and exc.should_fallback:
        return f"workflow disabled ({exc})"
    return str(exc) or exc.__class__.__name__


class RSVPSubmissionPipeline:
    """Persist an RSVP through the first tier that succeeds.

    Tiers, in order: a direct per-RSVP file write, a ``submit_rsvp`` workflow
    dispatch, and finally an issue the sync job picks up later.
    """

    def __init__(
        self,
        content: GitHubContentStore,
        bridge: WorkflowDispatchBridge,
        issues: GitHubClient,
        *,
        state: AppState | None = None,
        on_failure: Callable[[dict[str, Any], str], Any] | None = None,
    ) -> None:
        self.content = content
        self.bridge = bridge
        self.issues = issues
        self.state = state
        self.on_failure = on_failure

    def submit(self, raw: dict[str, Any]) -> SubmissionResult:
        rsvp = build_rsvp(raw)
        tiers: tuple[tuple[str, Callable[[RSVP], SubmissionResult]], ...] = (
            ("direct_file", self._write_file),
            ("workflow_dispatch", self._dispatch),
            ("github_issue", self._open_issue),
        )
        failures: dict[str, str] = {}
        for method, tier in tiers:
            try:
                result = tier(rsvp)
            except (EventCallError, httpx.HTTPError) as exc:
                failures[method] = _failure_reason(exc)
                logger.warning("RSVP %s failed for event %s: %s", method, rsvp.event_id, exc)
                continue
            if self.state is not None:
                self.state.record_rsvp(result.rsvp)
            logger.info("RSVP for event %s stored via %s", rsvp.event_id, method)
            return result
        error = SubmissionFailed(failures)
        if self.on_failure is not None:
            self.on_failure(rsvp.to_json(), str(error))
        raise error

    def _existing_rsvp(self, rsvp: RSVP) -> RSVP | None:
        if self.state is not None:
            cached = self.state.find_rsvp(rsvp.event_id, rsvp.email)
            if cached is not None:
                return cached
        files = self.content.load_json_files(f"rsvps/{rsvp.event_id}/")
        for item in files.values():
            record = unwrap_record(item)
            if str(record.get("email", "")).lower() == rsvp.email:
                return parse_document(RSVP, record)
        return None

    def _write_file(self, rsvp: RSVP) -> SubmissionResult:
        if not rsvp.is_update:
            existing = self._existing_rsvp(rsvp)
            if existing is not None and existing.rsvp_id:
                rsvp = rsvp.model_copy(
                    update={
                        "rsvp_id": existing.rsvp_id,
                        "is_update": True,
                        "edit_token": existing.edit_token or rsvp.edit_token,
                        "check_in_token": existing.check_in_token or rsvp.check_in_token,
                    }
                )
        path = rsvp_path(rsvp.event_id, rsvp.rsvp_id)
        current = self.content.get_file(path)
        verb = "Update" if current else "Create"
        if current:
            rsvp = rsvp.model_copy(update={"is_update": True})
        commit = self.content.put_file(
            path,
            rsvp.to_json(),
            f"{verb} RSVP: {rsvp.name} for event {rsvp.event_id}",
            sha=current.sha if current else None,
        )
        return SubmissionResult(
            method="direct_file",
            rsvp=rsvp,
            detail={"path": path, "commitSha": commit.commit_sha},
        )

    def _dispatch(self, rsvp: RSVP) -> SubmissionResult:
        result = self.bridge.dispatch("submit_rsvp", rsvp.to_json())
        return SubmissionResult(
            method="workflow_dispatch",
            rsvp=rsvp,
            local=result.local,
            detail={"transport": result.transport},
        )

    def _open_issue(self, rsvp: RSVP) -> SubmissionResult:
        labels = ["rsvp", "automated", "attending" if rsvp.attending else "not-attending"]
        issue = self.issues.create_issue(issue_title(rsvp), render_issue_body(rsvp), labels)
        return SubmissionResult(
            method="github_issue",
            rsvp=rsvp,
            detail={"issueNumber": issue.get("number"), "issueUrl": issue.get("html_url")},
        )


def save_event_rsvps(
    content: GitHubContentStore,
    event_id: str,
    incoming: list[dict[str, Any]],
    *,
    message: str | None = None,
) -> CommitResult:
    """Merge ``incoming`` into the event's aggregate RSVP file."""
    path = aggregate_path(event_id)
    current = content.get_file(path)
    existing = current.content if current and isinstance(current.content, list) else []
    merged = merge_rsvps(existing, incoming)
    return content.put_file(
        path,
        merged,
        message or f"Process RSVPs for event {event_id} ({len(incoming)} submissions)",
        sha=current.sha if current else None,
    )


@dataclass
class SyncReport:
    total: int = 0
    processed: int = 0
    closed: int = 0
    events: dict[str, int] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def process_rsvp_issues(content: GitHubContentStore, issues: GitHubClient) -> SyncReport:
    """Fold open RSVP issues into per-event files and close them."""
    open_issues = issues.list_issues(state="open", labels=["rsvp"], per_page=100)
    report = SyncReport(total=len(open_issues))
    grouped: dict[str, list[tuple[dict[str, Any], dict[str, Any]]]] = {}
    for issue in open_issues:
        if "pull_request" in issue:
            continue
        record = extract_rsvp_from_issue(issue)
        if record is None or not record.get("eventId"):
            report.skipped.append(issue.get("number"))
            continue
        record["email"] = str(record.get("email", "")).strip().lower()
        grouped.setdefault(str(record["eventId"]), []).append((issue, record))

    for event_id, entries in grouped.items():
        try:
            save_event_rsvps(content, event_id, [record for _, record in entries])
        except EventCallError as exc:
            logger.error("Could not save RSVPs for event %s: %s", event_id, exc)
            report.errors.append(f"{event_id}: {exc}")
            continue
        report.processed += len(entries)
        report.events[event_id] = len(entries)
        for issue, _ in entries:
            try:
                issues.close_issue(issue["number"], labels=["rsvp", "processed"])
            except EventCallError as exc:
                logger.warning("Could not close issue #%s: %s", issue["number"], exc)
            else:
                report.closed += 1
    logger.info(
        "RSVP sync processed %s of %s issues across %s events",
        report.processed,
        report.total,
        len(report.events),
    )
    return report


def delete_rsvp(content: GitHubContentStore, event_id: str, email: str) -> bool:
    """Remove one guest's RSVP from both storage layouts."""
    email = email.strip().lower()
    removed = False
    path = aggregate_path(event_id)
    current = content.get_file(path)
    if current is not None and isinstance(current.content, list):
        kept = [
            item
            for item in current.content
            if str(unwrap_record(item).get("email", "")).lower() != email
        ]
        if len(kept) != len(current.content):
            content.put_file(
                path, kept, f"Delete RSVP from event {event_id}", sha=current.sha
            )
            removed = True
    for file_path, item in content.load_json_files(f"rsvps/{event_id}/").items():
        if str(unwrap_record(item).get("email", "")).lower() == email:
            content.delete_file(file_path, f"Delete RSVP from event {event_id}")
            removed = True
    return removed
