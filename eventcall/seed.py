"""Development helpers for populating a sandbox data repository."""

from __future__ import annotations

import random
from datetime import date, timedelta

from faker import Faker

from .rsvp import build_rsvp, save_event_rsvps
from .schemas import CustomQuestion, Event
from .workflows import WorkflowProcessor

_event_types = [
    "Dining Out",
    "Promotion Ceremony",
    "Change of Command",
    "Unit Picnic",
    "Holiday Social",
    "Retirement Ceremony",
    "Workshop",
]
_dietary_tags = ["vegetarian", "vegan", "gluten-free", "dairy-free", "nut-allergy"]
_branches = ["Army", "Navy", "Air Force", "Marines", "Coast Guard", "Space Force", ""]
_questions = [
    ("What is your unit?", "text"),
    ("Preferred entree?", "choice"),
    ("When will you arrive?", "datetime"),
]


def seed_fake_data(
    processor: WorkflowProcessor,
    *,
    events: int = 3,
    max_rsvps_per_event: int = 5,
    created_by: str | None = None,
    fake: Faker | None = None,
) -> dict[str, int]:
    """Write fake events and RSVPs through the workflow processor."""
    if events < 0:
        raise ValueError("events must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")

    fake = fake or Faker()
    stats = {"events": 0, "rsvps": 0}
    for _ in range(events):
        event = _fake_event(fake, created_by)
        processor.save_event(event.to_json())
        stats["events"] += 1
        stats["rsvps"] += _seed_rsvps(processor, fake, event, max_rsvps_per_event)
    return stats


def _fake_event(fake: Faker, created_by: str | None) -> Event:
    start = date.today() + timedelta(days=random.randint(3, 60))
    questions = []
    for text, kind in random.sample(_questions, k=random.randint(0, len(_questions))):
        options = ["Beef", "Chicken", "Vegetarian"] if kind == "choice" else None
        questions.append(
            CustomQuestion(question=text, type=kind, options=options, required=random.random() < 0.5)
        )
    return Event(
        title=f"{fake.city()} {random.choice(_event_types)}",
        date=start.isoformat(),
        time=f"{random.randint(9, 20):02d}:{random.choice(('00', '30'))}",
        location=fake.address().replace("\n", ", ")[:200],
        description=fake.paragraph(nb_sentences=3)[:500],
        ask_reason=random.random() < 0.3,
        allow_guests=random.random() < 0.8,
        requires_meal_choice=random.random() < 0.4,
        custom_questions=questions,
        created_by=created_by,
        created_by_name=created_by,
    )


def _fake_answer(fake: Faker, question: CustomQuestion) -> str:
    if question.options:
        return random.choice(question.options)
    if question.type == "datetime":
        return fake.date_time_this_year().isoformat(timespec="minutes")
    if question.type == "date":
        return fake.date_this_year().isoformat()
    return fake.bs()


def _seed_rsvps(processor: WorkflowProcessor, fake: Faker, event: Event, max_rsvps: int) -> int:
    if max_rsvps <= 0:
        return 0
    total = random.randint(0, max_rsvps)
    if not total:
        return 0
    records = []
    for _ in range(total):
        attending = random.random() < 0.75
        raw = {
            "eventId": event.id,
            "name": fake.name(),
            "email": fake.unique.email(),
            "phone": fake.numerify("555#######"),
            "attending": attending,
            "guestCount": random.randint(0, 3) if attending and event.allow_guests else 0,
            "branch": random.choice(_branches),
            "dietaryRestrictions": random.sample(_dietary_tags, k=random.randint(0, 2)),
            "customAnswers": {
                question.id: _fake_answer(fake, question) for question in event.custom_questions
            },
            "submissionMethod": "seed",
        }
        records.append(build_rsvp(raw).to_json())
    save_event_rsvps(
        processor.content,
        event.id,
        records,
        message=f"Seed {total} RSVPs for event {event.id}",
    )
    return total
