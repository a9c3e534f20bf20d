import time

import pytest

from bookjobs.queue import RequestQueue
from bookjobs.schemas import ContentType, JobRecord, Priority


def make_record(request_id, priority="normal", sequence=0):
    return JobRecord(
        id=request_id,
        content_type=ContentType.COLORING_PAGE,
        payload="a cat",
        priority=Priority(priority),
        submitted_at=time.time(),
        sequence=sequence,
    )


def drain(queue):
    out = []
    while True:
        record = queue.dequeue_next()
        if record is None:
            return out
        out.append(record.id)


def test_priority_then_submission_order():
    queue = RequestQueue()
    queue.enqueue(make_record("n1", "normal", 0))
    queue.enqueue(make_record("l1", "low", 1))
    queue.enqueue(make_record("u1", "urgent", 2))
    queue.enqueue(make_record("h1", "high", 3))
    queue.enqueue(make_record("n2", "normal", 4))
    queue.enqueue(make_record("u2", "urgent", 5))

    assert queue.peek_ids() == ["u1", "u2", "h1", "n1", "n2", "l1"]
    assert drain(queue) == ["u1", "u2", "h1", "n1", "n2", "l1"]
    assert queue.dequeue_next() is None


def test_requeued_request_keeps_its_place_among_equal_priority():
    queue = RequestQueue()
    queue.enqueue(make_record("late", "normal", 7))
    queue.enqueue(make_record("early", "normal", 3))
    assert drain(queue) == ["early", "late"]


def test_remove_queued_request():
    queue = RequestQueue()
    queue.enqueue(make_record("a", sequence=0))
    queue.enqueue(make_record("b", sequence=1))

    assert queue.remove("a") is True
    assert queue.remove("a") is False
    assert queue.remove("missing") is False
    assert "a" not in queue
    assert len(queue) == 1
    assert drain(queue) == ["b"]


def test_fifo_when_priority_processing_disabled():
    queue = RequestQueue(priority_processing=False)
    queue.enqueue(make_record("low", "low", 0))
    queue.enqueue(make_record("urgent", "urgent", 1))
    assert drain(queue) == ["low", "urgent"]


def test_duplicate_enqueue_rejected():
    queue = RequestQueue()
    queue.enqueue(make_record("a"))
    with pytest.raises(ValueError):
        queue.enqueue(make_record("a"))


def test_counts_by_priority_and_clear():
    queue = RequestQueue()
    queue.enqueue(make_record("u", "urgent", 0))
    queue.enqueue(make_record("n", "normal", 1))
    queue.enqueue(make_record("n2", "normal", 2))
    queue.remove("n2")

    assert queue.counts_by_priority() == {"urgent": 1, "high": 0, "normal": 1, "low": 0}
    assert [record.id for record in queue.clear()] == ["u", "n"]
    assert len(queue) == 0
