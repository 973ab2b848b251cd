"""Unit tests for batch and queue-item lifecycle guardrails."""

import pytest

from bulknotify.common.state_machine import (
    BatchStatus,
    InvalidTransition,
    QueueItemStatus,
    is_terminal,
    validate_transition,
)


def test_valid_batch_transitions():
    validate_transition(BatchStatus.PENDING, BatchStatus.PROCESSING)
    validate_transition(BatchStatus.PROCESSING, BatchStatus.COMPLETED)


def test_completed_batch_cannot_restart():
    """Completed is terminal; a late pass must not reopen the batch."""

    with pytest.raises(InvalidTransition):
        validate_transition(BatchStatus.COMPLETED, BatchStatus.PROCESSING)


def test_batch_cannot_skip_processing():
    with pytest.raises(InvalidTransition):
        validate_transition(BatchStatus.PENDING, BatchStatus.COMPLETED)


@pytest.mark.parametrize(
    "new",
    [QueueItemStatus.SENT, QueueItemStatus.PENDING, QueueItemStatus.FAILED],
)
def test_processing_item_outcomes(new):
    validate_transition(QueueItemStatus.PROCESSING, new)


def test_pending_item_must_be_claimed_before_sent():
    with pytest.raises(InvalidTransition):
        validate_transition(QueueItemStatus.PENDING, QueueItemStatus.SENT)


def test_failed_item_is_terminal():
    with pytest.raises(InvalidTransition):
        validate_transition(QueueItemStatus.FAILED, QueueItemStatus.PENDING)
    assert is_terminal(QueueItemStatus.FAILED)
    assert is_terminal(QueueItemStatus.SENT)
    assert is_terminal(BatchStatus.COMPLETED)
    assert not is_terminal(QueueItemStatus.PROCESSING)


def test_lifecycles_do_not_mix():
    """Equal string values across enums must not make a cross-entity move legal."""

    with pytest.raises(InvalidTransition):
        validate_transition(BatchStatus.PENDING, QueueItemStatus.PROCESSING)
