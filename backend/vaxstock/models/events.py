from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z


class EventLog(db.Model):
    """
    Append-only audit trail of stock and deletion events.

    Rows are written in the same transaction as the change they describe
    and are never updated or deleted, including by cascade deletion.
    """
    __tablename__ = "event_log"
    __table_args__ = (
        db.Index("ix_event_log_entity", "entity_type", "entity_id"),
        db.Index("ix_event_log_type_occurred", "event_type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)

    actor_level = db.Column(db.String(16), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    payload = db.Column(db.Text, nullable=True)

    def payload_dict(self) -> dict:
        if not self.payload:
            return {}
        return json.loads(self.payload)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_level": self.actor_level,
            "actor_id": self.actor_id,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "payload": self.payload_dict(),
        }
