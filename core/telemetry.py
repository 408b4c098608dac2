"""
core/telemetry.py -- Product analytics events.

Events are always written to the "builder.telemetry" logger. When TELEMETRY_URL
is configured they are also POSTed there as a JSON batch. Transport failures
are logged and dropped: analytics must never fail a sign-in or a profile update.

Usage:
    track_events([TelemetryEvent(name="User created", user_id=user.id)])
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

import requests

from core.config import get_settings

logger = logging.getLogger("builder.telemetry")

_session = requests.Session()


@dataclass
class TelemetryEvent:
    name: str  # "User created", "Workspace created", "User logged in", ...
    user_id: str
    workspace_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


def track_events(events: list[TelemetryEvent], url: str | None = None) -> None:
    """Record a batch of events. Never raises on transport failure."""
    if not events:
        return
    for event in events:
        logger.info("event=%r user_id=%s workspace_id=%s", event.name, event.user_id, event.workspace_id)

    target = url if url is not None else get_settings().telemetry_url
    if not target:
        return
    try:
        resp = _session.post(target, json={"events": [asdict(e) for e in events]}, timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Telemetry delivery failed (%d events): %s", len(events), e)
