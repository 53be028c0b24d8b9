"""Cron schedule evaluation for intents.

Pure functions over ``croniter``. All datetimes are naive UTC.

A scheduled intent is due when a cron boundary lies after its
``last_evaluated_at`` and at or before ``now``. Callers persist the
returned ``trigger_time`` (a cron boundary, never wall-clock time) as
the new ``last_evaluated_at``, so each boundary fires at most once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from croniter import croniter

from dockwatch.clock import utcnow
from dockwatch.database.models import SCHEDULE_IMMEDIATE

logger = logging.getLogger(__name__)


@dataclass
class CronValidation:
    """Result of validating a cron expression."""
    valid: bool
    error: Optional[str] = None
    next_run: Optional[datetime] = None


@dataclass
class DueResult:
    """Whether an intent is due, and which boundary it is due for."""
    is_due: bool
    next_run: Optional[datetime] = None
    trigger_time: Optional[datetime] = None
    reason: str = ""


def validate_cron(expression: str, now: Optional[datetime] = None) -> CronValidation:
    """Validate a cron expression and compute its next run.

    Args:
        expression: Standard 5-field cron expression (or 6 with seconds)
        now: Reference time (default: now)

    Returns:
        CronValidation with ``next_run`` set when valid
    """
    try:
        cron = croniter(expression, now or utcnow())
        return CronValidation(valid=True, next_run=cron.get_next(datetime))
    except (ValueError, KeyError, TypeError) as e:
        return CronValidation(valid=False, error=str(e) or type(e).__name__)


def get_next_run(expression: str, from_time: Optional[datetime] = None) -> Optional[datetime]:
    """Get the first boundary strictly after ``from_time``, or None if invalid."""
    try:
        return croniter(expression, from_time or utcnow()).get_next(datetime)
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Error computing next run for cron '{expression}': {e}")
        return None


def get_previous_run(expression: str, before: Optional[datetime] = None) -> Optional[datetime]:
    """Get the last boundary strictly before ``before``, or None if invalid."""
    try:
        return croniter(expression, before or utcnow()).get_prev(datetime)
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Error computing previous run for cron '{expression}': {e}")
        return None


def _latest_boundary(expression: str, now: datetime) -> datetime:
    """Most recent boundary at or before ``now``."""
    previous = croniter(expression, now).get_prev(datetime)
    following = croniter(expression, previous).get_next(datetime)
    return following if following <= now else previous


def is_intent_due(intent: Any, now: Optional[datetime] = None) -> DueResult:
    """Decide whether a scheduled intent is due.

    Immediate intents are never due here; they are driven by scan
    results. A missing or invalid cron expression fails closed.

    When several boundaries were missed, ``trigger_time`` is the most
    recent one at or before ``now``, so they coalesce into one due signal.

    Args:
        intent: Object with ``schedule_type``, ``schedule_cron`` and
            ``last_evaluated_at`` attributes
        now: Evaluation time (default: now)

    Returns:
        DueResult
    """
    if intent.schedule_type == SCHEDULE_IMMEDIATE:
        return DueResult(is_due=False, reason="immediate schedule type")

    if not intent.schedule_cron:
        return DueResult(is_due=False, reason="no cron expression")

    now = now or utcnow()
    validation = validate_cron(intent.schedule_cron, now)
    if not validation.valid:
        return DueResult(is_due=False, reason=f"invalid cron: {validation.error}")

    next_run = validation.next_run

    if intent.last_evaluated_at is None:
        logger.warning(
            f"Intent {getattr(intent, 'id', '?')} ({getattr(intent, 'name', '')}) has no "
            f"last_evaluated_at, treating as due"
        )
        return DueResult(
            is_due=True,
            next_run=next_run,
            trigger_time=now,
            reason="missing last_evaluated_at",
        )

    first_boundary = croniter(intent.schedule_cron, intent.last_evaluated_at).get_next(datetime)

    logger.debug(
        f"Evaluating intent {getattr(intent, 'id', '?')}: cron={intent.schedule_cron} "
        f"last_evaluated_at={intent.last_evaluated_at.isoformat()} "
        f"next_after_last={first_boundary.isoformat()} now={now.isoformat()}"
    )

    if first_boundary > now:
        return DueResult(is_due=False, next_run=next_run, reason="not yet due")

    trigger_time = max(first_boundary, _latest_boundary(intent.schedule_cron, now))
    return DueResult(
        is_due=True,
        next_run=next_run,
        trigger_time=trigger_time,
        reason=f"cron triggered at {trigger_time.isoformat()}",
    )


def describe_cron(expression: str, now: Optional[datetime] = None) -> str:
    """Short human-readable description of when a cron expression fires next."""
    validation = validate_cron(expression, now)
    if not validation.valid:
        return f"Invalid cron expression: {validation.error}"
    if validation.next_run is None:
        return "No upcoming runs"
    return f"Next run: {validation.next_run.isoformat()}"
