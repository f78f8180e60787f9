"""Queue names and the closed set of operations each queue accepts."""

from __future__ import annotations

from typing import Dict, FrozenSet, Tuple


SESSION_QUEUE = "session_queue"
ENTITY_QUEUE = "entity_queue"
ATTACHMENT_QUEUE = "attachment_queue"

# Sessions and projects are small JSON and must land before the photos that
# reference them.
SYNC_ORDER: Tuple[str, ...] = (SESSION_QUEUE, ENTITY_QUEUE, ATTACHMENT_QUEUE)

SESSION_OPS: FrozenSet[str] = frozenset({"create", "update", "complete"})
ENTITY_OPS: FrozenSet[str] = frozenset(
    {
        "create",
        "update",
        "delete",
        "member_add",
        "member_update",
        "member_remove",
    }
)
ATTACHMENT_OPS: FrozenSet[str] = frozenset({"upload"})

VALID_OPS: Dict[str, FrozenSet[str]] = {
    SESSION_QUEUE: SESSION_OPS,
    ENTITY_QUEUE: ENTITY_OPS,
    ATTACHMENT_QUEUE: ATTACHMENT_OPS,
}

# Payload markers read by the UI.
STATUS_PENDING = "pending_sync"
STATUS_FAILED = "sync_failed"


def validate_operation(queue_name: str, operation: str) -> None:
    allowed = VALID_OPS.get(queue_name)
    if allowed is None:
        raise ValueError(f"Unknown queue: {queue_name}")
    if operation not in allowed:
        raise ValueError(f"Unsupported op for {queue_name}: {operation}")


__all__ = [
    "ATTACHMENT_OPS",
    "ATTACHMENT_QUEUE",
    "ENTITY_OPS",
    "ENTITY_QUEUE",
    "SESSION_OPS",
    "SESSION_QUEUE",
    "STATUS_FAILED",
    "STATUS_PENDING",
    "SYNC_ORDER",
    "VALID_OPS",
    "validate_operation",
]
