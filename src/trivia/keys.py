"""Fast-store key schema.

All Redis keys used by the service are built here so the layout is visible
in one place.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

DAY_SECONDS = 86400


def today_key() -> str:
    """UTC date suffix used by the daily counters."""
    return datetime.now(timezone.utc).date().isoformat()


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def lock_key(identity: str) -> str:
    return f"lock:session:{identity}"


def cooldown_key(identity: str) -> str:
    return f"cooldown:{identity}"


def daily_limit_key(identity: str, day: str | date | None = None) -> str:
    return f"limit:daily:{identity}:{day or today_key()}"


def seen_key(identity: str, category_id: str, day: str | date | None = None) -> str:
    return f"seen:{identity}:{category_id}:{day or today_key()}"


def global_ladder_key(season_id: str) -> str:
    return f"ladder:global:{season_id}"


def category_ladder_key(category_id: str, season_id: str) -> str:
    return f"ladder:category:{category_id}:{season_id}"


def ladder_index_key(ladder_key: str) -> str:
    """Hash of identity -> current sorted-set member for a ladder."""
    return f"ladder:index:{ladder_key.removeprefix('ladder:')}"


def workflow_lock_key(run_id: str) -> str:
    """Held while one worker advances a workflow run."""
    return f"workflow:lock:{run_id}"
