"""APScheduler integration."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def run_rsvp_sync() -> Any:
    """Fold open RSVP issues into the data repository using global settings."""
    from .client import EventCallClient

    if not (settings.github_token or settings.token_list):
        logger.debug("Skipping RSVP issue sync: no GitHub token configured")
        return None
    with EventCallClient(settings) as client:
        report = client.sync_rsvp_issues()
    logger.info(
        "RSVP issue sync: %d processed, %d closed", report.processed, report.closed
    )
    return report


def start_scheduler(
    job: Callable[[], Any] | None = None, *, minutes: int | None = None
) -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        job or run_rsvp_sync,
        "interval",
        minutes=minutes or settings.rsvp_sync_minutes,
        id="rsvp-issue-sync",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
