from __future__ import annotations

import httpx
import pytest

from eventcall.errors import SubmissionFailed, ValidationError
from eventcall.rsvp import (
    MISSING_FIELDS_MESSAGE,
    build_rsvp,
    extract_rsvp_from_issue,
    merge_rsvps,
    render_issue_body,
    validate_rsvp_form,
    validate_submission,
    validation_hash,
)
from eventcall.schemas import CustomQuestion, Event
from eventcall.storage import list_pending_rsvps, queue_pending_rsvp
from eventcall.utils import to_base36

FORBIDDEN = {"message": "Resource not accessible by integration"}


def _raw(**overrides):
    raw = {
        "eventId": "evt-1",
        "name": "Jane Doe",
        "email": "JANE@X.COM",
        "attending": True,
        "guestCount": 2,
    }
    raw.update(overrides)
    return raw


def _reference_hash(text: str) -> str:
    value = 0
    for char in text:
        value = (value << 5) - value + ord(char)
        value = (value + 2**31) % 2**32 - 2**31
    return to_base36(abs(value))


def test_validation_hash_matches_rolling_hash():
    assert validation_hash("", "", "") == "140"
    assert validation_hash("evt-1", "jane@x.com", 1700000000000) == _reference_hash(
        "evt-1-jane@x.com-1700000000000"
    )


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        (_raw(eventId="  "), MISSING_FIELDS_MESSAGE),
        (_raw(name=""), MISSING_FIELDS_MESSAGE),
        (_raw(email="not-an-email"), "Invalid email format"),
    ],
)
def test_validate_submission(raw, message):
    with pytest.raises(ValidationError) as excinfo:
        validate_submission(raw)
    assert str(excinfo.value) == message


def test_form_validation_messages():
    event = Event(
        id="evt-1",
        title="Gala",
        date="2026-12-01",
        time="18:00",
        allow_guests=False,
        custom_questions=[CustomQuestion(id="q_unit", question="Unit?", required=True)],
    )
    problems = validate_rsvp_form(
        _raw(name="J", phone="abc", guestCount=1, attending=True), event
    )
    assert "Name must be 2-50 letters, spaces, hyphens or periods" in problems
    assert "Please enter a valid phone number" in problems
    assert "This event does not allow additional guests" in problems
    assert "Please answer: Unit?" in problems

    assert validate_rsvp_form(
        _raw(phone="(555) 123-4567", guestCount=0, customAnswers={"q_unit": "1st Bn"}), event
    ) == []
    assert "Please select whether you are attending" in validate_rsvp_form(_raw(attending=None))
    assert "Guest count must be between 0 and 10" in validate_rsvp_form(_raw(guestCount=11))


def test_build_rsvp_normalises():
    rsvp = build_rsvp(_raw(name="  Jane Doe ", guestCount="2"), now_ms=1000)
    assert rsvp.email == "jane@x.com"
    assert rsvp.name == "Jane Doe"
    assert rsvp.guest_count == 2
    assert rsvp.timestamp == 1000
    assert rsvp.submission_method == "secure_backend"
    assert rsvp.validation_hash == validation_hash("evt-1", "jane@x.com", 1000)
    assert rsvp.rsvp_id and rsvp.edit_token and rsvp.check_in_token
    assert rsvp.headcount == 3
    assert build_rsvp(_raw(attending=False)).headcount == 0


def test_build_rsvp_rejects_negative_guests():
    with pytest.raises(ValidationError):
        build_rsvp(_raw(guestCount=-1))


def test_merge_rsvps_replaces_by_email():
    existing = [{"email": "a@x.com", "name": "A"}, {"email": "b@x.com", "name": "B"}]
    merged = merge_rsvps(existing, [{"email": "A@X.com", "name": "A2"}, {"email": "c@x.com"}])
    assert [item.get("name") for item in merged] == ["A2", "B", None]
    assert len(merged) == 3


def test_merge_rsvps_matches_enveloped_entries_and_collapses_duplicates():
    existing = [
        {"data": {"email": "jane@x.com", "name": "Old"}, "sentAt": 1},
        {"email": "sam@x.com", "name": "Sam"},
        {"email": "JANE@x.com", "name": "Older"},
    ]
    merged = merge_rsvps(existing, [{"email": "jane@x.com", "name": "New"}])
    assert merged == [
        {"email": "jane@x.com", "name": "New"},
        {"email": "sam@x.com", "name": "Sam"},
    ]


@pytest.mark.parametrize(
    "overrides",
    [
        {"attending": "maybe"},
        {"dietaryRestrictions": "vegan"},
        {"timestamp": "yesterday"},
    ],
)
def test_build_rsvp_reports_bad_field_types(overrides):
    with pytest.raises(ValidationError) as excinfo:
        build_rsvp(_raw(**overrides))
    assert excinfo.value.kind == "validation"
    assert next(iter(overrides)) in str(excinfo.value)


def test_submit_with_bad_field_type_makes_no_requests(make_client, github):
    with pytest.raises(ValidationError):
        make_client().rsvps.submit(_raw(attending="maybe"))
    assert github.requests == []


def test_issue_body_round_trips_through_extraction():
    rsvp = build_rsvp(_raw())
    body = render_issue_body(rsvp)
    assert "```json" in body
    record = extract_rsvp_from_issue({"number": 7, "body": body, "html_url": "u"})
    assert record["email"] == "jane@x.com"
    assert record["issueNumber"] == 7
    assert record["issueUrl"] == "u"
    assert record["processedAt"].endswith("Z")
    assert extract_rsvp_from_issue({"number": 8, "body": "no block"}) is None
    assert extract_rsvp_from_issue({"number": 9, "body": "```json\n{oops\n```"}) is None


def test_submit_writes_per_rsvp_file(make_client, github):
    client = make_client()
    result = client.rsvps.submit(_raw())

    path = f"rsvps/evt-1/{result.rsvp.rsvp_id}.json"
    assert result.method == "direct_file"
    assert github.read(path)["email"] == "jane@x.com"
    assert github.commits == ["Create RSVP: Jane Doe for event evt-1"]
    assert client.state.headcount("evt-1") == 3


def test_resubmission_reuses_rsvp_id(make_client, github):
    first = make_client().rsvps.submit(_raw())
    second = make_client().rsvps.submit(_raw(email="jane@x.com", guestCount=0))

    assert second.rsvp.rsvp_id == first.rsvp.rsvp_id
    assert second.rsvp.is_update
    rsvp_files = [path for path in github.files if path.startswith("rsvps/evt-1/")]
    assert len(rsvp_files) == 1
    assert github.read(rsvp_files[0])["guestCount"] == 0


def test_invalid_submission_makes_no_requests(make_client, github):
    with pytest.raises(ValidationError):
        make_client().rsvps.submit(_raw(email="bad"))
    assert github.requests == []


def test_falls_back_to_workflow_dispatch(make_client, github):
    github.fail("PUT", "/contents/rsvps/", httpx.Response(403, json=FORBIDDEN))

    result = make_client().rsvps.submit(_raw())

    assert result.method == "workflow_dispatch"
    assert github.dispatches[0]["event_type"] == "submit_rsvp"
    assert github.dispatches[0]["client_payload"]["data"]["email"] == "jane@x.com"


def test_falls_back_to_issue(make_client, github):
    github.fail("PUT", "/contents/rsvps/", httpx.Response(403, json=FORBIDDEN))
    github.dispatch_status = 404

    result = make_client().rsvps.submit(_raw(attending=False))

    assert result.method == "github_issue"
    issue = github.issues[0]
    assert issue["title"] == "RSVP: Jane Doe - evt-1"
    assert [label["name"] for label in issue["labels"]] == ["rsvp", "automated", "not-attending"]
    assert result.detail["issueNumber"] == issue["number"]


def test_all_tiers_failing_queues_locally(make_client, github):
    github.fail("PUT", "/contents/rsvps/", httpx.Response(403, json=FORBIDDEN))
    github.fail("POST", "/issues", httpx.Response(500, json={"message": "Server Error"}))
    github.dispatch_status = 404
    client = make_client(pending_queue=queue_pending_rsvp)

    with pytest.raises(SubmissionFailed) as excinfo:
        client.rsvps.submit(_raw())

    message = str(excinfo.value)
    assert message.startswith("All submission methods failed (")
    for tier in ("direct_file", "workflow_dispatch: workflow disabled", "github_issue"):
        assert tier in message
    pending = list_pending_rsvps()
    assert len(pending) == 1
    assert pending[0][1]["email"] == "jane@x.com"


def test_workflow_submit_rsvp_example(make_client, github):
    """Dispatching submit_rsvp for evt-1 leaves one normalised record."""
    client = make_client()
    processor = client.workflow_processor()

    processor.handle("submit_rsvp", {"data": _raw()})

    records = github.read("rsvps/evt-1.json")
    assert len(records) == 1
    assert records[0]["email"] == "jane@x.com"
    assert records[0]["guestCount"] == 2
    assert github.commits == ["RSVP response: Jane Doe for event evt-1"]
    client.events.load_responses({"evt-1"})
    assert client.state.headcount("evt-1") == 3


def test_workflow_submit_rsvp_replaces_enveloped_entry(make_client, github):
    github.seed_file(
        "rsvps/evt-1.json",
        [
            {"data": {"eventId": "evt-1", "email": "jane@x.com", "name": "Jane Doe"}},
            {"eventId": "evt-1", "email": "sam@x.com", "name": "Sam"},
        ],
    )
    processor = make_client().workflow_processor()

    processor.handle("submit_rsvp", {"data": _raw()})

    records = github.read("rsvps/evt-1.json")
    assert [record["email"] for record in records] == ["jane@x.com", "sam@x.com"]
    assert records[0]["guestCount"] == 2


def test_sync_folds_issues_into_event_files(make_client, github):
    github.seed_file("rsvps/evt-1.json", [{"email": "jane@x.com", "name": "Old", "eventId": "evt-1"}])
    for raw in (_raw(), _raw(eventId="evt-2", email="sam@x.com", name="Sam")):
        rsvp = build_rsvp(raw)
        github.add_issue(f"RSVP: {rsvp.name}", render_issue_body(rsvp), ["rsvp", "automated"])
    github.add_issue("RSVP: broken", "no json here", ["rsvp"])
    github.add_issue("Unrelated", "```json\n{}\n```", ["bug"])

    report = make_client().sync_rsvp_issues()

    assert report.processed == 2
    assert report.closed == 2
    assert report.skipped == [3]
    assert report.events == {"evt-1": 1, "evt-2": 1}
    evt1 = github.read("rsvps/evt-1.json")
    assert len(evt1) == 1 and evt1[0]["name"] == "Jane Doe"
    assert evt1[0]["issueNumber"] == 1
    assert github.read("rsvps/evt-2.json")[0]["email"] == "sam@x.com"
    closed = [issue for issue in github.issues if issue["state"] == "closed"]
    assert [issue["number"] for issue in closed] == [1, 2]
    assert [label["name"] for label in closed[0]["labels"]] == ["rsvp", "processed"]


def test_delete_rsvp_from_both_layouts(make_client, github):
    github.seed_file(
        "rsvps/evt-1.json",
        [{"email": "jane@x.com", "name": "Jane"}, {"email": "sam@x.com", "name": "Sam"}],
    )
    github.seed_file("rsvps/evt-1/r1.json", {"email": "JANE@x.com", "name": "Jane"})
    client = make_client()

    assert client.delete_rsvp("evt-1", "Jane@X.com") is True
    assert github.read("rsvps/evt-1.json") == [{"email": "sam@x.com", "name": "Sam"}]
    assert "rsvps/evt-1/r1.json" not in github.files
    assert client.delete_rsvp("evt-1", "nobody@x.com") is False
