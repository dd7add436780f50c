from datetime import timedelta

import pytest

from conftest import CLINIC, NOW
from opd_agents.events import STATUS_CANCELLED, STATUS_FAILED, STATUS_PENDING, STATUS_SENT
from opd_agents.queue_processor import QueueProcessor


def _queue(stores, n=1, *, clinic=CLINIC, phone="9876543210", offset_min=0, **extra):
    ids = []
    for i in range(n):
        row = {
            "clinic_id": clinic,
            "patient_id": f"pat-{i}",
            "phone_number": phone,
            "event_type": "bill_created",
            "message_content": f"message {i}",
            "metadata": {"billId": f"b-{i}"},
            "status": STATUS_PENDING,
            "scheduled_at": NOW - timedelta(minutes=offset_min + i),
            "retry_count": 0,
        }
        row.update(extra)
        ids.append(stores.queue.insert_message(row))
    return ids


@pytest.fixture
def processor(stores, gateway, clock):
    return QueueProcessor(stores.queue, stores.log, gateway, clock=clock, retry_delay_sec=60)


def test_successful_send_marks_row_sent_and_logs(processor, stores, gateway):
    (mid,) = _queue(stores, phone="+91 98765 43210")

    result = processor.process_pending(CLINIC, user_id="user-1")

    assert (result.attempted, result.sent, result.failed) == (1, 1, 0)
    row = stores.queue.rows[mid]
    assert row["status"] == STATUS_SENT
    assert row["sent_at"] == NOW
    assert gateway.sent == [
        {
            "phone": "919876543210",
            "message": "message 0",
            "metadata": {"billId": "b-0", "eventType": "bill_created"},
            "user_id": "user-1",
            "clinic_id": CLINIC,
        }
    ]
    assert [e["status"] for e in stores.log.entries] == [STATUS_SENT]


def test_pass_is_capped_at_batch_size_in_scheduled_order(processor, stores, gateway):
    _queue(stores, 60)

    result = processor.process_pending(CLINIC)

    assert result.attempted == 50
    assert len(gateway.sent) == 50
    # message 59 is the oldest; the 10 newest stay pending
    assert gateway.sent[0]["message"] == "message 59"
    assert gateway.sent[-1]["message"] == "message 10"
    pending = [r for r in stores.queue.rows.values() if r["status"] == STATUS_PENDING]
    assert sorted(r["message_content"] for r in pending) == sorted(f"message {i}" for i in range(10))


def test_not_yet_due_and_other_clinics_are_ignored(processor, stores, gateway):
    _queue(stores, scheduled_at=NOW + timedelta(minutes=5))
    _queue(stores, clinic="clinic-2")
    assert processor.process_pending(CLINIC).attempted == 0
    assert gateway.sent == []


def test_failure_retries_then_fails_permanently(processor, stores, gateway, clock):
    (mid,) = _queue(stores)
    gateway.fail_all = True

    r1 = processor.process_pending(CLINIC)
    row = stores.queue.rows[mid]
    assert r1.retrying == 1
    assert row["status"] == STATUS_PENDING
    assert row["retry_count"] == 1
    assert row["scheduled_at"] == NOW + timedelta(seconds=60)
    assert "gateway rejected" in row["error"]

    # not due again until the backoff passes
    assert processor.process_pending(CLINIC).attempted == 0

    clock.now = NOW + timedelta(minutes=2)
    processor.process_pending(CLINIC)
    assert stores.queue.rows[mid]["retry_count"] == 2
    assert stores.queue.rows[mid]["status"] == STATUS_PENDING

    clock.now = NOW + timedelta(minutes=10)
    r3 = processor.process_pending(CLINIC)
    assert r3.failed == 1
    assert stores.queue.rows[mid]["status"] == STATUS_FAILED
    assert stores.queue.rows[mid]["retry_count"] == 3

    # terminal: never selected again, even if the gateway recovers
    gateway.fail_all = False
    clock.now = NOW + timedelta(days=1)
    assert processor.process_pending(CLINIC).attempted == 0
    assert [e["status"] for e in stores.log.entries] == [STATUS_FAILED] * 3


def test_one_failure_does_not_abort_the_pass(processor, stores, gateway):
    bad = _queue(stores, phone="1111111111", offset_min=10)[0]
    good = _queue(stores, phone="2222222222")[0]
    gateway.fail_phones.add("911111111111")

    result = processor.process_pending(CLINIC)

    assert (result.attempted, result.sent, result.retrying) == (2, 1, 1)
    assert stores.queue.rows[bad]["status"] == STATUS_PENDING
    assert stores.queue.rows[good]["status"] == STATUS_SENT


def test_row_with_two_prior_failures_fails_on_next_error(processor, stores, gateway):
    (mid,) = _queue(stores, retry_count=2)
    gateway.fail_all = True
    processor.process_pending(CLINIC)
    assert stores.queue.rows[mid]["status"] == STATUS_FAILED


def test_exhausted_and_cancelled_rows_are_not_selected(processor, stores, gateway):
    _queue(stores, retry_count=3)
    _queue(stores, status=STATUS_CANCELLED)
    _queue(stores, status=STATUS_FAILED)
    assert processor.process_pending(CLINIC).attempted == 0


def test_log_write_failure_keeps_message_sent(processor, stores, gateway):
    (mid,) = _queue(stores)
    stores.log.broken = True
    result = processor.process_pending(CLINIC)
    assert result.sent == 1
    assert stores.queue.rows[mid]["status"] == STATUS_SENT


def test_store_failure_on_one_row_is_isolated(processor, stores, gateway):
    first, second = _queue(stores, 2)
    original = stores.queue.mark_sent

    def flaky(message_id, sent_at):
        if message_id == second:  # the older row goes first
            raise ConnectionError("lost connection")
        original(message_id, sent_at)

    stores.queue.mark_sent = flaky
    result = processor.process_pending(CLINIC)
    assert result.errors == 1
    assert result.sent == 1
    assert stores.queue.rows[first]["status"] == STATUS_SENT


def test_unrecorded_send_is_delivered_again_next_pass(processor, stores, gateway):
    (mid,) = _queue(stores)
    original = stores.queue.mark_sent

    def lost_write(message_id, sent_at):
        raise ConnectionError("lost connection")

    stores.queue.mark_sent = lost_write
    first = processor.process_pending(CLINIC)
    assert (first.errors, first.sent) == (1, 0)
    assert stores.queue.rows[mid]["status"] == STATUS_PENDING

    stores.queue.mark_sent = original
    second = processor.process_pending(CLINIC)
    assert second.sent == 1
    assert [s["message"] for s in gateway.sent] == ["message 0", "message 0"]


def test_lock_ttl_covers_a_batch_of_timeouts(stores, gateway):
    slow = QueueProcessor(stores.queue, stores.log, gateway, batch_size=50, send_timeout=25)
    assert slow.lock_ttl(floor=300) >= 50 * 25

    small = QueueProcessor(stores.queue, stores.log, gateway, batch_size=1, send_timeout=1)
    assert small.lock_ttl(floor=300) == 300
