"""Tests for batch planning."""

from crmsync.platform.batch.planner import clamp_batch_size, plan_batches
from crmsync.platform.batch.types import Operation


def _ops(count, group=None, prefix="op"):
    return [
        Operation("annotations", {"subject": f"{prefix}{i}"}, group=group) for i in range(count)
    ]


def test_operations_split_at_limit_in_order():
    """Test that batches are filled in input order up to the limit."""
    ops = _ops(25)

    batches = plan_batches(ops, max_operations=10)

    assert [len(b) for b in batches] == [10, 10, 5]
    flattened = [op.payload["subject"] for b in batches for op in b]
    assert flattened == [f"op{i}" for i in range(25)]


def test_sequences_restart_per_batch():
    """Test that each batch is numbered 1..n."""
    batches = plan_batches(_ops(12), max_operations=10)

    assert [op.sequence for op in batches[0]] == list(range(1, 11))
    assert [op.sequence for op in batches[1]] == [1, 2]


def test_group_is_not_split_across_batches():
    """Test that a parent and its children move to the next batch together."""
    ops = _ops(8, prefix="loose") + _ops(4, group="WO-1", prefix="wo")

    batches = plan_batches(ops, max_operations=10)

    assert [len(b) for b in batches] == [8, 4]
    assert all(op.group == "WO-1" for op in batches[1])


def test_oversized_group_is_chunked():
    """Test that a group larger than the limit is split rather than dropped."""
    ops = _ops(3, prefix="loose") + _ops(25, group="big", prefix="big")

    batches = plan_batches(ops, max_operations=10)

    assert [len(b) for b in batches] == [3, 10, 10, 5]


def test_empty_input_yields_no_batches():
    """Test that nothing is planned for no operations."""
    assert plan_batches([], max_operations=10) == []


def test_batch_size_clamped():
    """Test that the limit is kept within 10..1000."""
    assert clamp_batch_size(1) == 10
    assert clamp_batch_size(250) == 250
    assert clamp_batch_size(5000) == 1000
