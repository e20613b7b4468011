from __future__ import annotations

import pytest

from eventcall.errors import ValidationError
from eventcall.schemas import CustomQuestion, Event, User


def _event(**overrides):
    fields = {"id": "evt-1", "title": "Dining In", "date": "2026-12-01", "time": "18:00"}
    fields.update(overrides)
    return Event(**fields)


MANAGER = User(username="jane", name="Jane Doe", email="jane@example.com")


def test_create_event_dispatches_with_question_count(make_client, github):
    client = make_client()
    event = _event(
        description="x" * 600,
        custom_questions=[CustomQuestion(question="Unit?"), CustomQuestion(question="Meal?")],
    )

    client.events.create_event(event, MANAGER)

    sent = github.dispatches[0]
    assert sent["event_type"] == "create_event"
    data = sent["client_payload"]["data"]
    assert data["customQuestionsCount"] == 2
    assert len(data["description"]) == 500
    assert data["createdBy"] == "jane@example.com"
    assert data["createdByUsername"] == "jane"
    assert data["created"] == data["lastModified"]
    assert client.state.events["evt-1"].title == "Dining In"


def test_create_event_requires_title_date_and_time(make_client, github):
    with pytest.raises(ValidationError) as excinfo:
        make_client().events.create_event(_event(title=" ", time=""))
    assert str(excinfo.value) == "Missing required event fields: title, time"
    assert github.requests == []


def test_update_event_keeps_creation_time(make_client, github):
    client = make_client()
    client.events.update_event(_event(created=1000, created_by="sam@example.com"), MANAGER)

    data = github.dispatches[0]["client_payload"]["data"]
    assert github.dispatches[0]["event_type"] == "update_event"
    assert data["created"] == 1000
    assert data["createdBy"] == "sam@example.com"
    assert "customQuestionsCount" not in data


def test_load_events_filters_by_owner(make_client, github):
    github.seed_file("events/a.json", _event(id="a", created_by="jane@example.com").to_json())
    github.seed_file(
        "events/b.json", {**_event(id="b").to_json(), "createdByUsername": "Jane"}
    )
    github.seed_file("events/c.json", _event(id="c", created_by="sam@example.com").to_json())
    github.seed_file("events/broken.json", {"id": "broken"})
    client = make_client()

    mine = client.events.load_events(MANAGER)
    assert sorted(event.id for event in mine) == ["a", "b"]

    everything = client.events.load_events()
    assert sorted(event.id for event in everything) == ["a", "b", "c"]
    assert set(client.state.events) == {"a", "b", "c"}


def test_load_responses_reads_both_layouts(make_client, github):
    github.seed_file(
        "rsvps/evt-1.json",
        [
            {"email": "jane@x.com", "name": "Jane", "attending": True, "timestamp": 100},
            {"email": "sam@x.com", "name": "Sam", "attending": False, "timestamp": 100},
        ],
    )
    github.seed_file(
        "rsvps/evt-1/r1.json",
        {
            "data": {
                "email": "jane@x.com",
                "name": "Jane",
                "attending": True,
                "guestCount": 1,
                "timestamp": 200,
            }
        },
    )
    github.seed_file("rsvps/evt-2.json", [{"email": "kim@x.com", "name": "Kim"}])
    client = make_client()

    responses = client.events.load_responses({"evt-1"})

    assert set(responses) == {"evt-1"}
    by_email = {rsvp.email: rsvp for rsvp in responses["evt-1"]}
    assert set(by_email) == {"jane@x.com", "sam@x.com"}
    assert by_email["jane@x.com"].guest_count == 1
    assert all(rsvp.event_id == "evt-1" for rsvp in responses["evt-1"])
    assert client.state.headcount("evt-1") == 2


def test_delete_event_removes_every_file(make_client, github):
    github.seed_file("events/evt-1.json", _event().to_json())
    github.seed_file("rsvps/evt-1.json", [])
    github.seed_file("rsvps/evt-1/r1.json", {"email": "a@x.com"})
    github.seed_file("rsvps/evt-1/r2.json", {"email": "b@x.com"})
    github.seed_file("rsvps/evt-10.json", [])
    client = make_client()
    client.state.merge_events([_event()])

    deleted = client.events.delete_event("evt-1")

    assert sorted(deleted) == [
        "events/evt-1.json",
        "rsvps/evt-1.json",
        "rsvps/evt-1/r1.json",
        "rsvps/evt-1/r2.json",
    ]
    assert list(github.files) == ["rsvps/evt-10.json"]
    assert "evt-1" not in client.state.events
    assert set(github.commits) == {"Delete event: evt-1"}
