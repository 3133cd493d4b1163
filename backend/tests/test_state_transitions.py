"""Queue item state machine tests.

The transition table is the single source of truth for what the lifecycle
manager's conditional UPDATEs accept as source statuses.
"""

import pytest

from genqueue.models.queue_item import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    QueueStatus,
    allowed_sources,
    check_transition,
)
from genqueue.services.exceptions import InvalidTransition


def can_move(current: QueueStatus, target: QueueStatus) -> bool:
    try:
        check_transition(current, target)
    except InvalidTransition:
        return False
    return True


def test_queued_can_start_or_be_cancelled():
    assert can_move(QueueStatus.QUEUED, QueueStatus.PROCESSING)
    assert can_move(QueueStatus.QUEUED, QueueStatus.CANCELLED)
    assert not can_move(QueueStatus.QUEUED, QueueStatus.COMPLETED)
    assert not can_move(QueueStatus.QUEUED, QueueStatus.FAILED)


def test_processing_can_finish_fail_or_be_cancelled():
    for target in (QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED):
        assert can_move(QueueStatus.PROCESSING, target)
    assert not can_move(QueueStatus.PROCESSING, QueueStatus.QUEUED)


def test_completed_accepts_nothing():
    for target in QueueStatus:
        assert not can_move(QueueStatus.COMPLETED, target)


@pytest.mark.parametrize("status", [QueueStatus.FAILED, QueueStatus.CANCELLED])
def test_failed_and_cancelled_only_go_back_to_queued(status):
    assert can_move(status, QueueStatus.QUEUED)
    for target in (QueueStatus.PROCESSING, QueueStatus.COMPLETED, QueueStatus.FAILED):
        assert not can_move(status, target)


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {
        QueueStatus.COMPLETED,
        QueueStatus.FAILED,
        QueueStatus.CANCELLED,
    }


def test_no_transition_between_terminal_states():
    for source in TERMINAL_STATUSES:
        for target in TERMINAL_STATUSES:
            assert target not in ALLOWED_TRANSITIONS[source]


def test_allowed_sources():
    assert set(allowed_sources(QueueStatus.CANCELLED)) == {
        QueueStatus.QUEUED,
        QueueStatus.PROCESSING,
    }
    assert set(allowed_sources(QueueStatus.QUEUED)) == {
        QueueStatus.FAILED,
        QueueStatus.CANCELLED,
    }
    assert allowed_sources(QueueStatus.COMPLETED) == [QueueStatus.PROCESSING]


def test_check_transition_raises_with_statuses_in_message():
    with pytest.raises(InvalidTransition, match="from completed to cancelled"):
        check_transition(QueueStatus.COMPLETED, QueueStatus.CANCELLED)

    check_transition(QueueStatus.QUEUED, QueueStatus.PROCESSING)
