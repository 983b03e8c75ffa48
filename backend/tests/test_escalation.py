from __future__ import annotations

import pytest

from taskcall.models.schemas import DialogueState
from taskcall.services.escalation import LADDER, next_on_unclear, should_confirm


@pytest.mark.parametrize(
    "count, expected",
    [
        (1, DialogueState.RETRY_TASK_CHECK),
        (2, DialogueState.CONFIRM_TASK),
        (3, DialogueState.ESCALATE),
        (4, DialogueState.ESCALATE),
        (50, DialogueState.ESCALATE),
    ],
)
def test_next_on_unclear(count: int, expected: DialogueState) -> None:
    assert next_on_unclear(count) is expected


def test_ladder_never_reverses() -> None:
    ranks = [LADDER.index(next_on_unclear(count)) for count in range(1, 10)]
    assert ranks == sorted(ranks)


def test_ladder_rejects_non_positive_counts() -> None:
    with pytest.raises(ValueError):
        next_on_unclear(0)


def test_confidence_floor() -> None:
    assert should_confirm(40)
    assert not should_confirm(90)
    assert should_confirm(90, floor=95)
    assert not should_confirm(70)
