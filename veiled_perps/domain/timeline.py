"""Stage timeline helpers for computation tickets."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def domain_build_stage_event(
    stage: str,
    status: str,
    details: dict[str, Any] | None = None,
    at_utc: datetime | None = None,
) -> dict[str, object]:
    """Build one structured timeline event payload.

    Args:
        stage: Stage name (`submit`, `await`, `recheck`).
        status: Stage status marker.
        details: Optional structured details object.
        at_utc: Optional event timestamp; defaults to now.

    Returns:
        dict[str, object]: Structured timeline event.
    """

    event_payload: dict[str, object] = {
        "stage": stage,
        "status": status,
        "at_utc": (at_utc or datetime.now(timezone.utc)).isoformat(),
    }
    if details:
        event_payload["details"] = dict(details)
    return event_payload


def domain_append_stage_event(
    timeline: list[dict[str, Any]],
    stage: str,
    status: str,
    details: dict[str, Any] | None = None,
) -> dict[str, object]:
    """Append one stage event to a timeline and return it.

    Args:
        timeline: Mutable timeline list.
        stage: Stage name.
        status: Stage status marker.
        details: Optional structured details object.

    Returns:
        dict[str, object]: Appended event.
    """

    stage_event = domain_build_stage_event(stage=stage, status=status, details=details)
    timeline.append(stage_event)
    return stage_event
