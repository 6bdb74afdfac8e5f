# Overview: Service-layer operations for the audit event log.

from __future__ import annotations

import json
from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import EventLog
"""
Event Log Invariants (authoritative)

- Append-only audit log for stock and deletion events.
- No domain/business logic in the event log itself.
- Events are written inside the same DB transaction as the change they record,
  so a rolled back operation leaves no event behind.
- occurred_at is business time; defaults to the database clock.
"""


def append_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int | None,
    scope=None,
    actor_user_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    payload: Optional[dict] = None,
) -> EventLog:
    """
    Append one event row.

    scope is the ActorScope of the caller, when there is one.
    """
    ev = EventLog(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_level=scope.level if scope is not None else None,
        actor_id=scope.entity_id if scope is not None else None,
        actor_user_id=actor_user_id if actor_user_id is not None else getattr(scope, "user_id", None),
        payload=json.dumps(payload, sort_keys=True, default=str) if payload else None,
    )
    if occurred_at is not None:
        ev.occurred_at = occurred_at  # otherwise the db default applies
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_events(
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> list[EventLog]:
    query = db.session.query(EventLog)
    if entity_type:
        query = query.filter(EventLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(EventLog.entity_id == entity_id)
    if event_type:
        query = query.filter(EventLog.event_type == event_type)
    return query.order_by(EventLog.id.desc()).limit(limit).all()
