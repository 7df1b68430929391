"""Post-commit side effects.

Notifications and audit records are written to the outbox inside the same
unit of work as the transition they describe, and only leave the service
once that unit of work has committed.
"""
import uuid

from bookstore.domain.history import Actor, HistoryMixin

NOTIFICATION_EVENT = "notification.send"
AUDIT_EVENT = "audit.record"


async def enqueue_notification(uow, kind: str, user_id: str, reference_id: str, message: str, data: dict | None = None) -> str:
    return await uow.outbox.create(
        event_type=NOTIFICATION_EVENT,
        event_data={
            "kind": kind,
            "user_id": user_id,
            "reference_id": reference_id,
            "message": message,
            "data": data or {},
            "idempotency_key": f"notification_{kind}_{reference_id}_{uuid.uuid4().hex[:8]}",
        },
        aggregate_id=reference_id,
    )


async def enqueue_audit(
    uow,
    action: str,
    aggregate_type: str,
    aggregate_id: str,
    actor: Actor | None = None,
    data: dict | None = None,
) -> str:
    return await uow.outbox.create(
        event_type=AUDIT_EVENT,
        event_data={
            "action": action,
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id,
            "actor_id": actor.id if actor else None,
            "actor_role": actor.role.value if actor else None,
            "data": data or {},
        },
        aggregate_id=aggregate_id,
    )


async def enqueue_history(uow, aggregate_type: str, aggregate: HistoryMixin) -> int:
    """Forwards every transition recorded since load to the audit trail."""
    events = aggregate.pull_events()
    for event in events:
        await uow.outbox.create(
            event_type=AUDIT_EVENT,
            event_data={
                "action": event.event,
                "aggregate_type": aggregate_type,
                "aggregate_id": aggregate.id,
                "actor_id": event.actor_id,
                "actor_role": event.actor_role.value if event.actor_role else None,
                "data": {
                    "sequence": event.sequence,
                    "at": event.at.isoformat(),
                    "description": event.description,
                    **event.metadata,
                },
            },
            aggregate_id=aggregate.id,
        )
    return len(events)


async def enqueue_movement(uow, ledger: str, owner_id: str, movement, actor: Actor | None = None) -> str:
    return await enqueue_audit(
        uow,
        action=f"{ledger}.{movement_kind(movement)}",
        aggregate_type=ledger,
        aggregate_id=owner_id,
        actor=actor,
        data=movement.model_dump(mode="json"),
    )


def movement_kind(movement) -> str:
    kind = getattr(movement, "type", None) or getattr(movement, "kind")
    return kind.value
