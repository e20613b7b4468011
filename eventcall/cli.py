"""Typer CLI for EventCall."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
import uvicorn
from sqlalchemy.exc import OperationalError

from .client import EventCallClient
from .config import load_settings, settings, settings_as_dict, update_config_file
from .errors import ConfigurationError, EventCallError, user_message
from .proxy import require_proxy_settings
from .rsvp import validate_rsvp_form
from .schemas import CustomQuestion, Event, Registration, User
from .seed import seed_fake_data
from .state import AppState
from .storage import (
    MetaSessionStore,
    clear_autosave,
    clear_session_user,
    init_db,
    list_pending_rsvps,
    load_autosave,
    load_session_user,
    load_state_snapshot,
    queue_pending_rsvp,
    remove_pending_rsvp,
    save_autosave,
    save_session_user,
    save_state_snapshot,
    upgrade_database,
)
from .workflows import load_dispatch_event

logger = logging.getLogger(__name__)

app = typer.Typer(help="EventCall command-line interface")
token_app = typer.Typer(help="Inspect and rotate the configured GitHub tokens")
events_app = typer.Typer(help="Create, list and delete events")
rsvp_app = typer.Typer(help="Submit and manage RSVPs")
workflow_app = typer.Typer(help="Backend automation entry points")
app.add_typer(token_app, name="token")
app.add_typer(events_app, name="events")
app.add_typer(rsvp_app, name="rsvp")
app.add_typer(workflow_app, name="workflow")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
) -> None:
    """Show help when no subcommand is provided."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@contextmanager
def _reporting_errors() -> Iterator[None]:
    try:
        yield
    except EventCallError as exc:
        logger.debug("Command failed", exc_info=exc)
        typer.secho(user_message(exc), err=True, fg=typer.colors.RED)
        if str(exc) and str(exc) not in user_message(exc):
            typer.secho(f"Details: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _persist_session(user: User | None) -> None:
    if user is None:
        clear_session_user()
    else:
        save_session_user(user.public())


def _open_client() -> EventCallClient:
    init_db()
    state = AppState.restore(load_state_snapshot())
    session_user = load_session_user()
    state.current_user = User.model_validate(session_user) if session_user else None
    return EventCallClient(
        settings,
        session_store=MetaSessionStore(),
        state=state,
        on_session_change=_persist_session,
        on_token_expired=clear_session_user,
        pending_queue=queue_pending_rsvp,
    )


@contextmanager
def _client() -> Iterator[EventCallClient]:
    with _reporting_errors():
        client = _open_client()
        try:
            yield client
        finally:
            save_state_snapshot(client.state.snapshot())
            client.close()


def _require_user(client: EventCallClient) -> User:
    user = client.state.current_user
    if user is None:
        typer.secho("Not signed in. Run 'eventcall login' first.", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return user


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the local SQLite cache schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return
    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the dispatch and auth proxy."""
    try:
        require_proxy_settings(settings)
    except ConfigurationError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Starting EventCall proxy on {host}:{port}")
    uvicorn.run(
        "eventcall.proxy:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


@app.command("config")
def configure(
    show: bool = typer.Option(False, "--show", help="Show the current effective configuration"),
    github_owner: str | None = typer.Option(None, "--github-owner", help="Repository owner"),
    github_repo: str | None = typer.Option(
        None, "--github-repo", help="Repository that runs the workflows and holds issues"
    ),
    data_repo: str | None = typer.Option(
        None, "--data-repo", help="Repository holding events/, rsvps/ and users/"
    ),
    github_branch: str | None = typer.Option(None, "--branch", help="Branch for data commits"),
    dispatch_url: str | None = typer.Option(None, "--dispatch-url", help="Proxy base URL"),
    force_proxy: bool | None = typer.Option(
        None, "--force-proxy/--no-force-proxy", help="Always dispatch through the proxy"
    ),
    client_origin: str | None = typer.Option(
        None, "--client-origin", help="Origin the client presents (selects the transport)"
    ),
    auth_mode: str | None = typer.Option(
        None, "--auth-mode", help="workflow, proxy, simple or demo"
    ),
    poll_timeout_seconds: float | None = typer.Option(
        None, "--poll-timeout", min=1, help="Seconds to wait for an auth response"
    ),
    poll_interval_seconds: float | None = typer.Option(
        None, "--poll-interval", min=0.1, help="Seconds between auth response polls"
    ),
    retry_max_attempts: int | None = typer.Option(
        None, "--retry-attempts", min=1, help="Attempts per GitHub request"
    ),
    request_timeout_seconds: float | None = typer.Option(
        None, "--request-timeout", min=1, help="Per-request timeout in seconds"
    ),
    allowed_origins: str | None = typer.Option(
        None, "--allowed-origins", help="Comma separated origins the proxy accepts"
    ),
    rsvp_sync_minutes: int | None = typer.Option(
        None, "--rsvp-sync-minutes", min=1, help="Minutes between RSVP issue syncs"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle the background RSVP issue sync",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventcall.toml (default: ./eventcall.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "github_owner": github_owner,
        "github_repo": github_repo,
        "data_repo": data_repo,
        "github_branch": github_branch,
        "dispatch_url": dispatch_url,
        "force_proxy": force_proxy,
        "client_origin": client_origin,
        "auth_mode": auth_mode,
        "poll_timeout_seconds": poll_timeout_seconds,
        "poll_interval_seconds": poll_interval_seconds,
        "retry_max_attempts": retry_max_attempts,
        "request_timeout_seconds": request_timeout_seconds,
        "allowed_origins": allowed_origins,
        "rsvp_sync_minutes": rsvp_sync_minutes,
        "enable_scheduler": enable_scheduler,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    try:
        if clean_updates:
            settings_ref = update_config_file(clean_updates, path=target_path)
            typer.echo(f"Updated configuration in {target_path}")
        else:
            settings_ref = load_settings(target_path)
    except ValueError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


@app.command("login")
def login(
    username: str = typer.Argument(..., help="Account username"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
) -> None:
    """Sign in and remember the session locally."""
    with _client() as client:
        result = client.auth.login(username, password)
    name = result.user.name or result.user.username if result.user else username
    suffix = " (local)" if result.local else ""
    typer.secho(f"Signed in as {name}{suffix}", fg=typer.colors.GREEN)


@app.command("register")
def register(
    username: str = typer.Argument(..., help="Username (3-50 of a-z, 0-9, . _ -)"),
    name: str = typer.Option(..., "--name", prompt=True),
    email: str = typer.Option(..., "--email", prompt=True),
    branch: str = typer.Option("", "--branch"),
    rank: str = typer.Option("", "--rank"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
) -> None:
    """Create an account and sign in."""
    registration = Registration(
        username=username, password=password, name=name, email=email, branch=branch, rank=rank
    )
    with _client() as client:
        result = client.auth.register(registration)
    typer.secho(result.message or "Registration successful", fg=typer.colors.GREEN)


@app.command("logout")
def logout() -> None:
    """Forget the signed-in user."""
    with _client() as client:
        client.auth.logout()
    typer.echo("Signed out.")


@app.command("whoami")
def whoami() -> None:
    """Show the signed-in user."""
    init_db()
    user = load_session_user()
    if not user:
        typer.echo("Not signed in.")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(user, indent=2))


@app.command("update-profile")
def update_profile(
    name: str | None = typer.Option(None, "--name"),
    email: str | None = typer.Option(None, "--email"),
    branch: str | None = typer.Option(None, "--branch"),
    rank: str | None = typer.Option(None, "--rank"),
) -> None:
    """Change profile fields of the signed-in user."""
    updates = {
        key: value
        for key, value in {"name": name, "email": email, "branch": branch, "rank": rank}.items()
        if value is not None
    }
    if not updates:
        typer.echo("Nothing to update.")
        return
    with _client() as client:
        _require_user(client)
        result = client.auth.update_profile(updates)
    typer.secho(result.message or "Profile updated", fg=typer.colors.GREEN)


@token_app.command("status")
def token_status() -> None:
    """Show how many tokens are configured and which one is active."""
    with _client() as client:
        tokens = client.tokens
        count = len(tokens.tokens) or (1 if tokens.fallback_token else 0)
        typer.echo(f"Configured tokens: {count}")
        typer.echo(f"Active index: {tokens.index % len(tokens.tokens) if tokens.tokens else 0}")
        expiry = tokens.expires_at.isoformat() if tokens.expires_at else "not set"
        typer.echo(f"Expires: {expiry}")
        endpoint_stats = client.fetcher.limiter.stats if client.fetcher.limiter else {}
        for key, stats in endpoint_stats.items():
            typer.echo(f"{key}: remaining={stats.remaining}")


@token_app.command("rotate")
def token_rotate() -> None:
    """Advance to the next configured token."""
    with _client() as client:
        index = client.tokens.advance()
    typer.echo(f"Active token index: {index}")


@events_app.command("list")
def events_list(
    mine: bool = typer.Option(False, "--mine", help="Only events created by the signed-in user"),
) -> None:
    """List events with their current headcount."""
    with _client() as client:
        owner = _require_user(client) if mine else None
        events = client.events.load_events(owner)
        client.events.load_responses({event.id for event in events})
        if not events:
            typer.echo("No events found.")
            return
        for event in sorted(events, key=lambda item: (item.date, item.time)):
            typer.echo(
                f"{event.id}  {event.date} {event.time}  {event.title}  "
                f"({client.state.headcount(event.id)} attending)"
            )


@events_app.command("create")
def events_create(
    title: str = typer.Option(..., "--title", prompt=True),
    date: str = typer.Option(..., "--date", prompt=True, help="YYYY-MM-DD"),
    time: str = typer.Option(..., "--time", prompt=True, help="HH:MM"),
    location: str = typer.Option("", "--location"),
    description: str = typer.Option("", "--description"),
    allow_guests: bool = typer.Option(True, "--allow-guests/--no-guests"),
    ask_reason: bool = typer.Option(False, "--ask-reason"),
    question: list[str] = typer.Option(
        [], "--question", help="Custom question; prefix with '!' to make it required"
    ),
) -> None:
    """Create an event through the backend workflow."""
    questions = [
        CustomQuestion(question=text.lstrip("!"), required=text.startswith("!"))
        for text in question
    ]
    event = Event(
        title=title,
        date=date,
        time=time,
        location=location,
        description=description,
        allow_guests=allow_guests,
        ask_reason=ask_reason,
        custom_questions=questions,
    )
    with _client() as client:
        result = client.events.create_event(event, manager=_require_user(client))
    note = " (local only, nothing was dispatched)" if result.local else ""
    typer.secho(f"Event {event.id} submitted via {result.transport}{note}", fg=typer.colors.GREEN)
    for item in questions:
        typer.echo(f"  question {item.id}: {item.question}")


@events_app.command("delete")
def events_delete(
    event_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete an event and all of its RSVPs."""
    if not yes:
        typer.confirm(f"Delete event {event_id} and its RSVPs?", abort=True)
    with _client() as client:
        deleted = client.events.delete_event(event_id)
    if not deleted:
        typer.echo("Nothing to delete.")
        return
    for path in deleted:
        typer.echo(f"Deleted {path}")


def _parse_answers(answers: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in answers:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected QUESTION_ID=ANSWER, got {item!r}")
        parsed[key.strip()] = value.strip()
    return parsed


@rsvp_app.command("submit")
def rsvp_submit(
    event_id: str = typer.Argument(...),
    name: str | None = typer.Option(None, "--name"),
    email: str | None = typer.Option(None, "--email"),
    attending: bool | None = typer.Option(None, "--attending/--not-attending"),
    guests: int | None = typer.Option(None, "--guests", min=0),
    phone: str | None = typer.Option(None, "--phone"),
    reason: str | None = typer.Option(None, "--reason"),
    dietary: list[str] = typer.Option([], "--dietary", help="Dietary restriction tag"),
    answer: list[str] = typer.Option([], "--answer", help="QUESTION_ID=ANSWER"),
    resume: bool = typer.Option(
        False, "--resume", help="Start from the answers kept by the last rejected attempt"
    ),
) -> None:
    """Submit an RSVP; falls back through file write, dispatch and issue.

    Rejected input is kept locally so ``--resume`` only needs the fields that
    were wrong.
    """
    form_key = f"rsvp:{event_id}"
    with _client() as client:
        raw: dict[str, Any] = dict(load_autosave(form_key) or {}) if resume else {}
        entered = {
            "name": name,
            "email": email,
            "attending": attending,
            "guestCount": guests,
            "phone": phone,
            "reason": reason,
            "dietaryRestrictions": dietary or None,
            "customAnswers": _parse_answers(answer) or None,
        }
        raw.update({key: value for key, value in entered.items() if value is not None})
        raw["eventId"] = event_id
        if not raw.get("name"):
            raw["name"] = typer.prompt("Name")
        if not raw.get("email"):
            raw["email"] = typer.prompt("Email")
        if raw.get("attending") is None:
            raw["attending"] = typer.confirm("Attending?")
        event = client.state.events.get(event_id)
        problems = validate_rsvp_form(raw, event)
        if problems:
            save_autosave(form_key, raw)
            for problem in problems:
                typer.secho(problem, err=True, fg=typer.colors.RED)
            typer.echo("Your answers were kept; fix them with 'eventcall rsvp submit --resume'.")
            raise typer.Exit(code=1)
        result = client.rsvps.submit(raw)
        clear_autosave(form_key)
    typer.secho(
        f"RSVP {result.rsvp.rsvp_id} saved via {result.method}", fg=typer.colors.GREEN
    )


@rsvp_app.command("list")
def rsvp_list(event_id: str = typer.Argument(...)) -> None:
    """List the responses of one event."""
    with _client() as client:
        responses = client.events.load_responses({event_id}).get(event_id, [])
        for rsvp in responses:
            status = f"attending +{rsvp.guest_count}" if rsvp.attending else "not attending"
            typer.echo(f"{rsvp.name} <{rsvp.email}>  {status}")
        typer.echo(f"Headcount: {client.state.headcount(event_id)}")


@rsvp_app.command("delete")
def rsvp_delete(
    event_id: str = typer.Argument(...),
    email: str = typer.Argument(...),
) -> None:
    """Remove a guest's RSVP from an event."""
    with _client() as client:
        removed = client.delete_rsvp(event_id, email)
    typer.echo("RSVP deleted." if removed else "No RSVP found for that email.")


@rsvp_app.command("sync")
def rsvp_sync() -> None:
    """Fold open RSVP issues into the per-event RSVP files."""
    with _client() as client:
        report = client.sync_rsvp_issues()
    typer.echo(
        f"Processed {report.processed} of {report.total} issues "
        f"across {len(report.events)} events; closed {report.closed}."
    )
    for error in report.errors:
        typer.secho(error, err=True, fg=typer.colors.RED)
    if report.errors:
        raise typer.Exit(code=1)


@rsvp_app.command("retry-pending")
def rsvp_retry_pending() -> None:
    """Resubmit RSVPs that failed every submission method."""
    with _client() as client:
        pending = list_pending_rsvps()
        if not pending:
            typer.echo("No pending RSVPs.")
            return
        failed = 0
        for pending_id, payload in pending:
            try:
                result = client.rsvps.submit(payload)
            except EventCallError as exc:
                failed += 1
                typer.secho(f"{payload.get('email')}: {exc}", err=True, fg=typer.colors.RED)
                continue
            remove_pending_rsvp(pending_id)
            typer.echo(f"{result.rsvp.email}: saved via {result.method}")
    if failed:
        raise typer.Exit(code=1)


@workflow_app.command("handle")
def workflow_handle(
    event_path: Path = typer.Option(
        ...,
        "--event-path",
        envvar="GITHUB_EVENT_PATH",
        exists=True,
        dir_okay=False,
        help="repository_dispatch event JSON",
    ),
) -> None:
    """Run the backend action for a repository_dispatch event."""
    with _client() as client:
        action, payload = load_dispatch_event(event_path)
        result = client.workflow_processor().handle(action, payload)
    typer.echo(json.dumps(result, indent=2))
    if result.get("success") is False:
        raise typer.Exit(code=1)


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(3, "--events", min=0, help="Number of events to create"),
    max_rsvps: int = typer.Option(
        5, "--max-rsvps", min=0, help="Maximum RSVPs to attach to each event"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Populate the data repository with fake events and RSVPs for testing."""
    if not yes:
        typer.confirm(
            f"Write fake data to {settings.github_owner}/{settings.data_repo}?", abort=True
        )
    with _client() as client:
        user = client.state.current_user
        stats = seed_fake_data(
            client.workflow_processor(),
            events=events,
            max_rsvps_per_event=max_rsvps,
            created_by=user.email or user.username if user else None,
        )
    typer.echo(f"Seed complete: {stats['events']} events, {stats['rsvps']} RSVPs created.")
