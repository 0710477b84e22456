from datetime import timedelta

from libs.core import models, state_machine


def test_valid_task_transition():
    assert state_machine.validate_task_transition(models.TaskState.queued, models.TaskState.running)
    assert state_machine.validate_task_transition(models.TaskState.running, models.TaskState.retrying)
    assert state_machine.validate_task_transition(models.TaskState.retrying, models.TaskState.queued)


def test_invalid_task_transition():
    assert not state_machine.validate_task_transition(models.TaskState.queued, models.TaskState.succeeded)
    assert not state_machine.validate_task_transition(models.TaskState.retrying, models.TaskState.succeeded)


def test_terminal_states_have_no_exits():
    for state in (models.TaskState.succeeded, models.TaskState.failed):
        assert state_machine.is_terminal(state)
        for target in models.TaskState:
            assert not state_machine.validate_task_transition(state, target)
    assert not state_machine.is_terminal(models.TaskState.retrying)


def test_idempotency_record_expiry():
    created = models.utcnow()
    record = models.IdempotencyRecord(key="k", owner_id="u1", step="match", created_at=created, ttl_ms=1000)
    assert not record.is_expired(created + timedelta(milliseconds=500))
    assert record.is_expired(created + timedelta(milliseconds=1500))
