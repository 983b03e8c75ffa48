from __future__ import annotations

from taskcall.core.config import settings
from taskcall.models.schemas import DialogueState


CONFIRM_AFTER = 2

# Ordered by severity; the ladder only ever moves rightwards.
LADDER = (
    DialogueState.RETRY_TASK_CHECK,
    DialogueState.CONFIRM_TASK,
    DialogueState.ESCALATE,
)


def next_on_unclear(count: int) -> DialogueState:
    """Recovery state for the ``count``-th unclear turn (1-based).

    Total over positive integers and monotonic: 1 -> retry, 2 -> confirm,
    3 and above -> escalate to a human.
    """
    if count < 1:
        raise ValueError(f"unclear count must be positive, got {count}")
    if count == 1:
        return DialogueState.RETRY_TASK_CHECK
    if count == CONFIRM_AFTER:
        return DialogueState.CONFIRM_TASK
    return DialogueState.ESCALATE


def should_confirm(confidence: int, *, floor: int | None = None) -> bool:
    """True when a classification is too weak to commit to a terminal branch."""
    minimum = settings.MIN_CONFIDENCE if floor is None else floor
    return confidence < minimum
