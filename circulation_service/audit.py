import logging
from dataclasses import dataclass
from typing import Optional

from .models import AuditLog

logger = logging.getLogger(__name__)

STAFF_ROLES = ("librarian", "staff", "admin")


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation. Resolved by the caller, never looked up here."""

    id: Optional[str] = None
    role: str = "system"

    @property
    def is_staff(self):
        return (self.role or "").strip().lower() in STAFF_ROLES


SYSTEM_ACTOR = Actor()


class AuditSink:
    """Fire-and-forget audit trail; a failed write is logged and dropped."""

    def __init__(self, storage, source="api"):
        self.storage = storage
        self.source = source

    def record(self, event_type, entity, entity_id, actor, context=None, success=True):
        actor = actor or SYSTEM_ACTOR
        entry = AuditLog(
            event_type=event_type,
            entity=entity,
            entity_id=None if entity_id is None else str(entity_id),
            actor_id=actor.id,
            actor_role=actor.role,
            source=self.source,
            success=success,
            context=context or None,
        )
        try:
            self.storage.add(entry)
        except Exception as e:
            logger.warning(
                "Failed to write audit entry %s for %s %s: %s",
                event_type,
                entity,
                entity_id,
                e,
            )
