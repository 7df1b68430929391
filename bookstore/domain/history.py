from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ActorRole(str, Enum):
    CUSTOMER = "cliente"
    ADMIN = "administrador"
    SYSTEM = "sistema"


class Actor(BaseModel):
    """Who triggered a transition or a ledger movement."""
    id: str | None = None
    role: ActorRole = ActorRole.SYSTEM

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=None, role=ActorRole.SYSTEM)

    @property
    def is_admin(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)


class HistoryEvent(BaseModel):
    sequence: int
    event: str
    at: datetime
    description: str = ""
    actor_id: str | None = None
    actor_role: ActorRole | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class HistoryMixin(BaseModel):
    """Append-only, strictly ordered event history shared by the aggregates.

    Events recorded since the aggregate was loaded are also kept aside so the
    orchestrator can forward them to the audit trail after saving.
    """
    history: list[HistoryEvent] = Field(default_factory=list)
    version: int = 0

    _pending: list[HistoryEvent] = PrivateAttr(default_factory=list)

    def record_event(
        self,
        event: str,
        description: str = "",
        actor: Actor | None = None,
        **metadata: Any,
    ) -> HistoryEvent:
        now = utcnow()
        if self.history and now < self.history[-1].at:
            now = self.history[-1].at
        entry = HistoryEvent(
            sequence=len(self.history) + 1,
            event=event,
            at=now,
            description=description,
            actor_id=actor.id if actor else None,
            actor_role=actor.role if actor else None,
            metadata=metadata,
        )
        self.history.append(entry)
        self._pending.append(entry)
        return entry

    def pull_events(self) -> list[HistoryEvent]:
        events, self._pending = self._pending, []
        return events
