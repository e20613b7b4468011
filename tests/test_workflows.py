from __future__ import annotations

import json

import pytest

from eventcall.correlator import response_title
from eventcall.errors import ValidationError
from eventcall.workflows import load_dispatch_event


def test_load_dispatch_event(tmp_path):
    path = tmp_path / "event.json"
    path.write_text(
        json.dumps({"action": "create_event", "client_payload": {"data": {"id": "e1"}}}),
        encoding="utf-8",
    )
    assert load_dispatch_event(path) == ("create_event", {"data": {"id": "e1"}})

    path.write_text(json.dumps({"client_payload": {}}), encoding="utf-8")
    with pytest.raises(ValidationError):
        load_dispatch_event(path)


def test_unsupported_action(make_client):
    with pytest.raises(ValidationError) as excinfo:
        make_client().workflow_processor().handle("drop_tables", {})
    assert str(excinfo.value) == "Unsupported workflow action: drop_tables"


def test_create_then_update_event_file(make_client, github):
    processor = make_client().workflow_processor()
    event = {"id": "e1", "title": "Dining In", "date": "2026-12-01", "time": "18:00"}

    processor.handle("create_event", {"data": event, "sentAt": 1})
    processor.handle("update_event", {"data": {**event, "title": "Dining Out"}})

    assert github.read("events/e1.json")["title"] == "Dining Out"
    assert github.commits == ["Create event: Dining In", "Update event: Dining Out"]


def test_delete_event_action(make_client, github):
    github.seed_file("events/e1.json", {"id": "e1"})
    github.seed_file("rsvps/e1.json", [])
    processor = make_client().workflow_processor()

    result = processor.handle("delete_event", {"data": {"id": "e1"}})

    assert result["deleted"] == ["events/e1.json", "rsvps/e1.json"]
    with pytest.raises(ValidationError):
        processor.handle("delete_event", {"data": {}})


def test_login_answers_through_response_issue(make_client, github):
    processor = make_client().workflow_processor()

    result = processor.handle(
        "login_user", {"data": {"username": "ghost", "password": "x", "client_id": "login_1_a"}}
    )

    assert result == {"success": False, "action": "login_user", "error": "Invalid credentials"}
    issue = github.issues[0]
    assert issue["title"] == response_title("login_1_a")
    assert json.loads(issue["body"]) == result
    assert [label["name"] for label in issue["labels"]] == ["auth-response", "automated"]


def test_auth_action_needs_client_id(make_client, github):
    with pytest.raises(ValidationError):
        make_client().workflow_processor().handle("login_user", {"data": {"username": "jane"}})
    assert github.issues == []


def test_register_answers_with_public_user(make_client, github):
    processor = make_client().workflow_processor()

    result = processor.handle(
        "register_user",
        {
            "data": {
                "username": "kim",
                "password": "Secret123",
                "name": "Kim",
                "email": "kim@x.com",
                "client_id": "register_1_b",
            }
        },
    )

    assert result["success"] is True
    assert result["username"] == "kim"
    assert "passwordHash" not in result["user"]
    assert "passwordHash" not in github.issues[0]["body"]
    assert github.read("users/kim.json")["passwordHash"].startswith("$2")


def test_save_event_reports_bad_field_types(make_client, github):
    event = {"id": "e1", "title": "Gala", "date": "2026-12-01", "time": "18:00"}
    with pytest.raises(ValidationError) as excinfo:
        make_client().workflow_processor().handle(
            "create_event", {"data": {**event, "allowGuests": "sometimes"}}
        )
    assert "allowGuests" in str(excinfo.value)
    assert "events/e1.json" not in github.files
